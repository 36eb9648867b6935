from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

UNASSIGNED_WORKER = "unassigned"

DEFAULT_ROUTES: Mapping[str, str] = MappingProxyType(
    {
        "create-prd": "libretto",
        "create-spec": "amadeus",
        "dev-story": "coda",
        "code-review": "rondo",
    }
)


@dataclass(frozen=True, slots=True)
class RoutingTable:
    """Immutable step-name -> worker mapping.

    Passed explicitly to the coordinator; there is no process-wide table.
    """

    routes: Mapping[str, str] = field(default_factory=lambda: DEFAULT_ROUTES)

    def __post_init__(self) -> None:
        object.__setattr__(self, "routes", MappingProxyType(dict(self.routes)))

    def resolve(self, step_name: str) -> str | None:
        return self.routes.get(step_name.strip())

    def worker_for(self, step_name: str) -> str:
        return self.resolve(step_name) or UNASSIGNED_WORKER

    def with_routes(self, extra: Mapping[str, str]) -> RoutingTable:
        return RoutingTable(routes={**self.routes, **extra})
