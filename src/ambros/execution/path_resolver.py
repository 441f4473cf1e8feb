import logging
import os
import re
import shutil
import stat
from pathlib import Path
from typing import Optional, Union

from ambros.errors import ExecutableNotFoundError, InvalidCommandError

logger = logging.getLogger(__name__)

SHELL_METACHARACTERS = frozenset(";&|$<>`*?~(){}[]'\"\\")
ALLOWED_NAME_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


class PathResolver:
    """Turns a user-supplied command name into an absolute executable path.

    Bare names are looked up on PATH. Anything containing a slash is treated
    as relative to the plugins base directory and must stay inside it, must
    not be reached through a symlink, and must carry the owner-execute bit.
    """

    def __init__(self, plugins_base: Union[str, Path], search_path: Optional[str] = None):
        self._base = os.path.realpath(os.path.expanduser(str(plugins_base)))
        self._search_path = search_path

    @property
    def plugins_base(self) -> str:
        return self._base

    def resolve(self, name: str) -> str:
        name = str(name or "")
        _check_name(name)
        if "/" not in name:
            return self._lookup_bare(name)
        if os.path.isabs(name):
            raise InvalidCommandError(f"absolute paths are not allowed: {name}")
        if ".." in name.split("/"):
            raise InvalidCommandError(f"path traversal is not allowed: {name}")
        candidate = os.path.normpath(os.path.join(self._base, name))
        _ensure_contained(candidate, self._base, name)
        self._ensure_no_symlink(candidate)
        _ensure_executable_file(candidate, name)
        return candidate

    def resolve_plugin_executable(self, plugin_dir: Union[str, Path], executable: str) -> str:
        """Resolve a manifest ``executable`` scoped to its own plugin directory."""
        executable = str(executable or "").strip()
        if not executable:
            raise InvalidCommandError("plugin executable is not set")
        if os.path.isabs(executable):
            raise InvalidCommandError(f"plugin executable must be relative: {executable}")
        if ".." in executable.replace("\\", "/").split("/"):
            raise InvalidCommandError(f"plugin executable escapes its directory: {executable}")
        plugin_dir = os.path.abspath(str(plugin_dir))
        root = os.path.join(os.path.realpath(os.path.dirname(plugin_dir)), os.path.basename(plugin_dir))
        _ensure_contained(root, self._base, str(plugin_dir))
        candidate = os.path.normpath(os.path.join(root, executable))
        _ensure_contained(candidate, root, executable)
        self._ensure_no_symlink(candidate)
        _ensure_executable_file(candidate, executable)
        return candidate

    def _lookup_bare(self, name: str) -> str:
        found = shutil.which(name, path=self._search_path)
        if not found:
            raise ExecutableNotFoundError(f"executable not found in PATH: {name}")
        return os.path.abspath(found)

    def _ensure_no_symlink(self, candidate: str) -> None:
        rel = os.path.relpath(candidate, self._base)
        current = self._base
        for part in rel.split(os.sep):
            if part in ("", "."):
                continue
            current = os.path.join(current, part)
            try:
                info = os.lstat(current)
            except FileNotFoundError:
                continue
            if stat.S_ISLNK(info.st_mode):
                raise InvalidCommandError(f"symlinks are not allowed in plugin paths: {current}")


def _check_name(name: str) -> None:
    if not name.strip():
        raise InvalidCommandError("command name is empty")
    bad = sorted({ch for ch in name if ch in SHELL_METACHARACTERS})
    if bad:
        raise InvalidCommandError(f"command contains shell metacharacters ({''.join(bad)}): {name}")
    if not ALLOWED_NAME_RE.match(name):
        raise InvalidCommandError(f"command contains disallowed characters: {name}")


def is_within(candidate: str, root: str) -> bool:
    rel = os.path.relpath(candidate, root)
    return rel != ".." and not rel.startswith(".." + os.sep) and not os.path.isabs(rel)


def _ensure_contained(candidate: str, root: str, shown: str) -> None:
    if not is_within(candidate, root) or os.path.normpath(candidate) == os.path.normpath(root):
        raise InvalidCommandError(f"path escapes the plugins directory: {shown}")


def _ensure_executable_file(candidate: str, shown: str) -> None:
    try:
        info = os.lstat(candidate)
    except FileNotFoundError as exc:
        raise ExecutableNotFoundError(f"executable not found: {shown}", exc)
    except OSError as exc:
        raise InvalidCommandError(f"cannot inspect executable: {shown}", exc)
    if stat.S_ISLNK(info.st_mode):
        raise InvalidCommandError(f"executable must not be a symlink: {shown}")
    if not stat.S_ISREG(info.st_mode):
        raise InvalidCommandError(f"executable is not a regular file: {shown}")
    if not info.st_mode & stat.S_IXUSR:
        raise InvalidCommandError(f"file is not executable: {shown}")
