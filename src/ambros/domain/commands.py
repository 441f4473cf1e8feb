import shlex
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

MODE_CAPTURED = "captured"
MODE_TRANSPARENT = "transparent"
MODE_CAPTURE_ECHO = "capture-echo"

EXECUTION_MODES = (MODE_CAPTURED, MODE_TRANSPARENT, MODE_CAPTURE_ECHO)


@dataclass(frozen=True)
class ExecutionRequest:
    program: str
    args: Tuple[str, ...] = ()
    mode: str = MODE_CAPTURED

    def __post_init__(self) -> None:
        if self.mode not in EXECUTION_MODES:
            raise ValueError(f"Unsupported execution mode: {self.mode}")
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    output: str = ""
    error_message: str = ""
    succeeded: bool = False
    echoed: bool = False

    @classmethod
    def failure(cls, error_message: str, exit_code: int = 1, output: str = "") -> "ExecutionResult":
        return cls(exit_code=exit_code, output=output, error_message=error_message, succeeded=False)


@dataclass
class CommandRecord:
    command_id: str
    name: str
    arguments: List[str]
    status: bool
    output: str = ""
    error: str = ""
    tags: List[str] = field(default_factory=list)
    category: str = ""
    variables: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None

    @property
    def command_text(self) -> str:
        return shlex.join([self.name, *self.arguments])
