from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

RESULT_SUCCESS = "success"
RESULT_FAILED = "failed"
RESULT_SKIPPED = "skipped"

CHAIN_STATUS_COMPLETED = "completed"
CHAIN_STATUS_PARTIAL = "partial"
CHAIN_STATUS_FAILED = "failed"

DEFAULT_CHAIN_TIMEOUT_SEC = 30 * 60.0


@dataclass(frozen=True)
class ChainSpec:
    name: str
    commands: Tuple[str, ...]
    conditional: bool = False
    parallel: bool = False
    retry_limit: int = 0
    timeout_sec: float = DEFAULT_CHAIN_TIMEOUT_SEC
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "commands", tuple(str(c) for c in self.commands))
        if not self.name.strip():
            raise ValueError("Chain name is required.")
        if self.retry_limit < 0:
            raise ValueError("retry_limit must be >= 0.")
        if self.timeout_sec <= 0:
            raise ValueError("timeout_sec must be positive.")

    @property
    def mode(self) -> str:
        return "parallel" if self.parallel else "sequential"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "commands": list(self.commands),
            "conditional": self.conditional,
            "parallel": self.parallel,
            "retry_limit": self.retry_limit,
            "timeout_sec": self.timeout_sec,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainSpec":
        return cls(
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            commands=tuple(str(c) for c in list(data.get("commands") or [])),
            conditional=bool(data.get("conditional", False)),
            parallel=bool(data.get("parallel", False)),
            retry_limit=int(data.get("retry_limit", 0) or 0),
            timeout_sec=float(data.get("timeout_sec") or DEFAULT_CHAIN_TIMEOUT_SEC),
        )


@dataclass(frozen=True)
class CommandExecutionResult:
    command_ref: str
    resolved_text: str
    status: str
    output: str = ""
    error: str = ""
    duration_sec: float = 0.0
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_ref": self.command_ref,
            "resolved_text": self.resolved_text,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "duration_sec": round(self.duration_sec, 3),
            "retry_count": self.retry_count,
        }


@dataclass
class ChainResult:
    chain_name: str
    started_at: datetime
    total_commands: int
    results: List[CommandExecutionResult] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.status == RESULT_SUCCESS)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if r.status == RESULT_FAILED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for r in self.results if r.status == RESULT_SKIPPED)

    @property
    def status(self) -> str:
        if self.failure_count == 0:
            return CHAIN_STATUS_COMPLETED
        if self.success_count == 0:
            return CHAIN_STATUS_FAILED
        return CHAIN_STATUS_PARTIAL

    @property
    def duration_sec(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_name": self.chain_name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_sec": round(self.duration_sec, 3),
            "total_commands": self.total_commands,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skipped_count": self.skipped_count,
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class PlannedCommand:
    command_ref: str
    resolved_text: str
    found: bool


@dataclass(frozen=True)
class ChainPlan:
    chain_name: str
    description: str
    commands: List[PlannedCommand]
    mode: str
    conditional: bool
    retry_limit: int
    timeout_sec: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_name": self.chain_name,
            "description": self.description,
            "mode": self.mode,
            "conditional": self.conditional,
            "retry_limit": self.retry_limit,
            "timeout_sec": self.timeout_sec,
            "commands": [
                {"command_ref": c.command_ref, "resolved_text": c.resolved_text, "found": c.found}
                for c in self.commands
            ],
        }
