"""Result types for convergence runs."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

Action = Literal["create", "update", "noop"]


@dataclass(frozen=True)
class ChangeRecord:
    """What convergence did (or would do) to one resource."""

    resource: str
    kind: str
    action: Action
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @property
    def mutating(self) -> bool:
        return self.action != "noop"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "kind": self.kind,
            "action": self.action,
            "before": self.before,
            "after": self.after,
        }


@dataclass
class ConvergenceResult:
    """Outcome of applying (or dry-running) a plan."""

    changes: List[ChangeRecord] = field(default_factory=list)
    dry_run: bool = False
    duration_seconds: float = 0.0

    @property
    def mutations(self) -> List[ChangeRecord]:
        return [change for change in self.changes if change.mutating]

    @property
    def has_changes(self) -> bool:
        return bool(self.mutations)

    def count(self, action: Action) -> int:
        return sum(1 for change in self.changes if change.action == action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "duration_seconds": round(self.duration_seconds, 3),
            "summary": {
                "create": self.count("create"),
                "update": self.count("update"),
                "noop": self.count("noop"),
            },
            "changes": [change.to_dict() for change in self.changes],
        }
