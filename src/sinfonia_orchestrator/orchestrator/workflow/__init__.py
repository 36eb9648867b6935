"""Explicit pipeline workflow concepts.

This package introduces first-class types for:
- The pipeline status lattice and step statuses
- The persisted workflow index and its markdown format
- Step routing, failure classification and escalation
- Resume summaries and crash recovery
- The approval-gated pipeline coordinator

The intent is to make long-horizon execution restartable, inspectable, and
deterministic in its control flow.
"""

__all__: list[str] = []
