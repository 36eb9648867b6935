"""Configuration for the pipeline coordinator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Persona routing is fixed for the four built-in steps; `SINFONIA_ROUTES` adds
project-specific steps on top of them.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sinfonia_orchestrator.orchestrator.workflow.routing import DEFAULT_ROUTES, RoutingTable


class OrchestratorSettings(BaseSettings):
    """Settings for the pipeline coordinator.

    Environment variables:
    - SINFONIA_HANDOFFS_DIR         (optional)
    - SINFONIA_WORKFLOWS_DIR        (optional)
    - LOG_LEVEL                     (optional)
    - SINFONIA_COORDINATOR_PERSONA  (optional)
    - SINFONIA_SUMMARY_WORD_LIMIT   (optional)
    - SINFONIA_ROUTES               (optional, JSON object)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    handoffs_dir: Path = Field(
        default=Path(".sinfonia/handoffs"),
        validation_alias="SINFONIA_HANDOFFS_DIR",
        description="Handoffs directory, relative to the work directory unless absolute",
    )

    workflows_dir: Path = Field(
        default=Path(".sinfonia/workflows"),
        validation_alias="SINFONIA_WORKFLOWS_DIR",
        description="Workflow definitions directory, relative to the work directory",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    coordinator_persona: str = Field(
        default="maestro",
        validation_alias="SINFONIA_COORDINATOR_PERSONA",
        description="Persona name the coordinator signs envelopes and decisions with",
    )

    summary_word_limit: int = Field(
        default=200,
        gt=0,
        validation_alias="SINFONIA_SUMMARY_WORD_LIMIT",
        description="Maximum number of words in a resume summary",
    )

    extra_routes: dict[str, str] = Field(
        default_factory=dict,
        validation_alias="SINFONIA_ROUTES",
        description="Additional step name -> worker persona routes",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("coordinator_persona")
    @classmethod
    def _require_persona(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("SINFONIA_COORDINATOR_PERSONA must not be blank")
        return value.strip()

    @field_validator("extra_routes")
    @classmethod
    def _require_route_names(cls, value: dict[str, str]) -> dict[str, str]:
        for step, worker in value.items():
            if not step.strip() or not worker.strip():
                raise ValueError("SINFONIA_ROUTES entries must have non-blank step and worker")
        return value

    def routing_table(self) -> RoutingTable:
        return RoutingTable(DEFAULT_ROUTES).with_routes(self.extra_routes)

    def handoffs_root(self, work_dir: Path) -> Path:
        """Directory holding one subdirectory per session."""

        if self.handoffs_dir.is_absolute():
            return self.handoffs_dir
        return work_dir / self.handoffs_dir

    def workflows_root(self, work_dir: Path) -> Path:
        """Directory holding one subdirectory per workflow definition."""

        if self.workflows_dir.is_absolute():
            return self.workflows_dir
        return work_dir / self.workflows_dir
