from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field, field_validator

PLUGIN_TYPE_SHELL = "shell"
PLUGIN_TYPE_INTERNAL = "internal"

_PLUGIN_TYPE_ALIASES = {
    "": PLUGIN_TYPE_SHELL,
    "shell": PLUGIN_TYPE_SHELL,
    "internal": PLUGIN_TYPE_INTERNAL,
    "go-internal": PLUGIN_TYPE_INTERNAL,
}

HOOK_PRE_RUN = "pre-run"
HOOK_POST_RUN = "post-run"


class PluginCommandDef(BaseModel):
    name: str
    description: str = ""
    usage: str = ""
    args: List[str] = Field(default_factory=list)


class PluginManifest(BaseModel):
    name: str
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    enabled: bool = False
    type: str = PLUGIN_TYPE_SHELL
    executable: str = ""
    commands: List[PluginCommandDef] = Field(default_factory=list)
    hooks: List[str] = Field(default_factory=list)
    config: Dict[str, str] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: object) -> str:
        raw = str(value or "").strip().lower()
        if raw not in _PLUGIN_TYPE_ALIASES:
            raise ValueError(f"type must be 'shell' or 'internal' (got '{raw}')")
        return _PLUGIN_TYPE_ALIASES[raw]

    @field_validator("config", mode="before")
    @classmethod
    def _stringify_config(cls, value: object) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("config must be an object")
        return {str(k): str(v) for k, v in value.items()}

    def handles_hook(self, event: str) -> bool:
        return event in self.hooks

    def command_names(self) -> List[str]:
        return [c.name for c in self.commands]


@dataclass(frozen=True)
class PluginAuditEvent:
    ts: datetime
    action: str
    plugin_name: str
    outcome: str
    details: Dict[str, str]


@dataclass(frozen=True)
class PluginRegistrySource:
    name: str
    url: str
