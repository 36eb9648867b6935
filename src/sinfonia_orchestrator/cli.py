"""Console script entrypoint.

The CLI is implemented in `sinfonia_orchestrator.orchestrator.main`.
"""

from __future__ import annotations

from sinfonia_orchestrator.orchestrator.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
