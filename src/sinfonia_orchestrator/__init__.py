"""Sinfonia Orchestrator.

A sequential, approval-gated coordinator for multi-agent pipelines:
- a durable markdown workflow index per session
- handoff envelopes exchanged with worker personas
- resume and crash recovery from what is on disk
"""

__version__ = "0.1.0"

from sinfonia_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
