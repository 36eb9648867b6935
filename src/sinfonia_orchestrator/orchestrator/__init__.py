"""Pipeline coordination components.

Provides:
- Settings loaded from .env
- Structured logging
- A small CLI surface
- The workflow index, coordinator and recovery logic
"""
