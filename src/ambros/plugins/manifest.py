import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ambros.domain.plugins import PLUGIN_TYPE_SHELL, PluginManifest
from ambros.errors import ConfigInvalidError, InvalidCommandError, NotFoundError
from ambros.execution.path_resolver import is_within

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "plugin.json"
PLUGIN_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")
HOOK_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")


def is_valid_plugin_name(name: str) -> bool:
    name = str(name or "")
    return bool(PLUGIN_NAME_RE.match(name)) and name not in {".", ".."}


def parse_manifest(data: Dict[str, Any]) -> PluginManifest:
    if not isinstance(data, dict):
        raise ConfigInvalidError("Manifest root must be a JSON object.")
    try:
        return PluginManifest.model_validate(data)
    except ValidationError as exc:
        raise ConfigInvalidError("Invalid plugin manifest", exc)


def load_manifest(path: Path) -> PluginManifest:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise NotFoundError(f"manifest not found: {path}", exc)
    except (OSError, ValueError) as exc:
        raise ConfigInvalidError(f"could not read manifest {path}", exc)
    return parse_manifest(data)


def validate_manifest(manifest: PluginManifest) -> List[str]:
    errors: List[str] = []
    if not is_valid_plugin_name(manifest.name):
        errors.append("name must match ^[A-Za-z0-9._-]+$.")
    if not manifest.version.strip():
        errors.append("version is required.")
    if manifest.type == PLUGIN_TYPE_SHELL:
        executable = manifest.executable.strip()
        if not executable:
            errors.append("executable is required for shell plugins.")
        elif os.path.isabs(executable) or ".." in executable.replace("\\", "/").split("/"):
            errors.append("executable must be a path relative to the plugin directory.")

    seen = set()
    for idx, command in enumerate(manifest.commands):
        cname = command.name.strip()
        if not cname:
            errors.append(f"commands[{idx}].name is required.")
            continue
        if cname in seen:
            errors.append(f"commands[{idx}].name '{cname}' is duplicated.")
        seen.add(cname)

    bad_hooks = [h for h in manifest.hooks if not HOOK_NAME_RE.match(h)]
    if bad_hooks:
        errors.append(f"hooks has invalid values: {', '.join(bad_hooks)}.")

    bad_deps = [d for d in manifest.dependencies if not is_valid_plugin_name(d)]
    if bad_deps:
        errors.append(f"dependencies has invalid plugin names: {', '.join(bad_deps)}.")
    if manifest.name in manifest.dependencies:
        errors.append("a plugin cannot depend on itself.")
    return errors


def save_manifest(path: Path, manifest: PluginManifest) -> None:
    """Write ``plugin.json`` via a temp file and ``os.replace``."""
    path = Path(path)
    payload = json.dumps(manifest.model_dump(), ensure_ascii=True, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=".plugin-", suffix=".json", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.chmod(tmp_name, 0o640)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def ensure_dir_is_safe(path: Union[str, Path]) -> None:
    """Refuse a plugin directory that is a symlink."""
    p = Path(path)
    if p.is_symlink():
        raise InvalidCommandError(f"plugin directory must not be a symlink: {p}")
    if p.exists() and not p.is_dir():
        raise InvalidCommandError(f"plugin path is not a directory: {p}")


class ManifestStore:
    """On-disk layout ``<plugins_dir>/<name>/plugin.json``."""

    def __init__(self, plugins_dir: Union[str, Path]):
        self._root = Path(os.path.realpath(os.path.expanduser(str(plugins_dir))))

    @property
    def root(self) -> Path:
        return self._root

    def dir_for(self, name: str) -> Path:
        if not is_valid_plugin_name(name):
            raise InvalidCommandError(
                f"invalid plugin name: {name} (allowed: letters, numbers, dot, dash, underscore)"
            )
        candidate = self._root / name
        if not is_within(str(candidate), str(self._root)):
            raise InvalidCommandError(f"plugin path escapes the plugins directory: {name}")
        return candidate

    def exists(self, name: str) -> bool:
        return (self.dir_for(name) / MANIFEST_FILENAME).is_file()

    def load(self, name: str) -> PluginManifest:
        plugin_dir = self.dir_for(name)
        ensure_dir_is_safe(plugin_dir)
        manifest = load_manifest(plugin_dir / MANIFEST_FILENAME)
        if manifest.name != name:
            raise ConfigInvalidError(f"manifest name '{manifest.name}' does not match directory '{name}'")
        return manifest

    def try_load(self, name: str) -> Optional[PluginManifest]:
        try:
            return self.load(name)
        except NotFoundError:
            return None

    def save(self, manifest: PluginManifest) -> Path:
        errors = validate_manifest(manifest)
        if errors:
            raise ConfigInvalidError("Invalid plugin manifest: " + "; ".join(errors))
        plugin_dir = self.dir_for(manifest.name)
        ensure_dir_is_safe(plugin_dir)
        plugin_dir.mkdir(parents=True, exist_ok=True, mode=0o750)
        target = plugin_dir / MANIFEST_FILENAME
        save_manifest(target, manifest)
        return target

    def names(self) -> List[str]:
        if not self._root.is_dir():
            return []
        out = []
        for entry in sorted(self._root.iterdir()):
            if entry.name.startswith(".") or not is_valid_plugin_name(entry.name):
                continue
            if entry.is_symlink() or not entry.is_dir():
                logger.warning("skipping unsafe plugin entry: %s", entry)
                continue
            if (entry / MANIFEST_FILENAME).is_file():
                out.append(entry.name)
        return out
