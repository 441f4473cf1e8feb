from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

ERR_INVALID_COMMAND = "invalid_command"
ERR_COMMAND_NOT_FOUND = "command_not_found"
ERR_COMMAND_EXISTS = "command_exists"
ERR_EXECUTABLE_NOT_FOUND = "executable_not_found"
ERR_EXECUTION_FAILED = "execution_failed"
ERR_REPOSITORY_READ = "repository_read"
ERR_REPOSITORY_WRITE = "repository_write"
ERR_CONFIG_INVALID = "config_invalid"
ERR_INTERNAL_SERVER = "internal_server"
ERR_HOOK_FAILED = "hook_failed"
ERR_NOT_FOUND = "not_found"


class AmbrosError(Exception):
    """Base error carrying a stable code and an optional underlying cause."""

    code = ERR_INTERNAL_SERVER

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class InvalidCommandError(AmbrosError):
    code = ERR_INVALID_COMMAND


class CommandNotFoundError(AmbrosError):
    code = ERR_COMMAND_NOT_FOUND


class CommandExistsError(AmbrosError):
    code = ERR_COMMAND_EXISTS


class ExecutableNotFoundError(AmbrosError):
    code = ERR_EXECUTABLE_NOT_FOUND


class ExecutionFailedError(AmbrosError):
    code = ERR_EXECUTION_FAILED


class RepositoryReadError(AmbrosError):
    code = ERR_REPOSITORY_READ


class RepositoryWriteError(AmbrosError):
    code = ERR_REPOSITORY_WRITE


class ConfigInvalidError(AmbrosError):
    code = ERR_CONFIG_INVALID


class NotFoundError(AmbrosError):
    code = ERR_NOT_FOUND


class InternalServerError(AmbrosError):
    code = ERR_INTERNAL_SERVER


class HookDispatchError(AmbrosError):
    """Raised once after every plugin subscribed to a hook has been attempted."""

    code = ERR_HOOK_FAILED

    def __init__(self, event: str, failures: Mapping[str, BaseException], handled: Optional[List[str]] = None):
        self.event = event
        self.failures: Dict[str, BaseException] = dict(failures)
        self.handled: List[str] = list(handled or [])
        parts = [f"{name}: {exc}" for name, exc in sorted(self.failures.items())]
        super().__init__(f"hook '{event}' failed for {len(parts)} plugin(s): " + "; ".join(parts))


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    http_status: int


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code=ERR_INVALID_COMMAND,
        title="Invalid command",
        user_message="The command name or path was rejected as unsafe.",
        http_status=400,
    ),
    ErrorCatalogEntry(
        code=ERR_COMMAND_NOT_FOUND,
        title="Command not found",
        user_message="No stored command, chain or plugin matches that name.",
        http_status=404,
    ),
    ErrorCatalogEntry(
        code=ERR_COMMAND_EXISTS,
        title="Already exists",
        user_message="An entry with that name already exists.",
        http_status=409,
    ),
    ErrorCatalogEntry(
        code=ERR_EXECUTABLE_NOT_FOUND,
        title="Executable not found",
        user_message="The executable could not be located on PATH or in the plugins directory.",
        http_status=404,
    ),
    ErrorCatalogEntry(
        code=ERR_EXECUTION_FAILED,
        title="Execution failed",
        user_message="The process could not be started or ended abnormally.",
        http_status=500,
    ),
    ErrorCatalogEntry(
        code=ERR_REPOSITORY_READ,
        title="Repository read failed",
        user_message="Stored data could not be read.",
        http_status=500,
    ),
    ErrorCatalogEntry(
        code=ERR_REPOSITORY_WRITE,
        title="Repository write failed",
        user_message="Data could not be persisted.",
        http_status=500,
    ),
    ErrorCatalogEntry(
        code=ERR_CONFIG_INVALID,
        title="Invalid configuration",
        user_message="A configuration value or plugin manifest failed validation.",
        http_status=400,
    ),
    ErrorCatalogEntry(
        code=ERR_HOOK_FAILED,
        title="Hook failed",
        user_message="One or more plugins failed while handling a hook.",
        http_status=500,
    ),
    ErrorCatalogEntry(
        code=ERR_NOT_FOUND,
        title="Not found",
        user_message="The requested resource does not exist.",
        http_status=404,
    ),
    ErrorCatalogEntry(
        code=ERR_INTERNAL_SERVER,
        title="Internal error",
        user_message="An unexpected error occurred.",
        http_status=500,
    ),
]


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == ERR_INTERNAL_SERVER)


def describe_error(exc: BaseException) -> str:
    code = getattr(exc, "code", ERR_INTERNAL_SERVER)
    entry = get_catalog_entry(code)
    return f"{entry.title}: {exc}"
