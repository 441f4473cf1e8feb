import json
import logging
import os
import shutil
import stat
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, FrozenSet, Iterator, List, Optional

import httpx

from ambros.domain.plugins import (
    PLUGIN_TYPE_SHELL,
    PluginAuditEvent,
    PluginCommandDef,
    PluginManifest,
    PluginRegistrySource,
)
from ambros.errors import (
    AmbrosError,
    CommandExistsError,
    ConfigInvalidError,
    InternalServerError,
    InvalidCommandError,
    NotFoundError,
)
from ambros.execution.path_resolver import PathResolver
from ambros.plugins.manifest import (
    MANIFEST_FILENAME,
    ensure_dir_is_safe,
    is_valid_plugin_name,
    load_manifest,
    parse_manifest,
    validate_manifest,
)
from ambros.plugins.runtime import DiscoveredPlugin, PluginRuntime

logger = logging.getLogger(__name__)

_DEFAULT_HTTP_TIMEOUT_SEC = 30.0

_SCRIPT_TEMPLATE = """#!/bin/sh
# Plugin: {name}
# Description: {description}
# Version: {version}
#
# ambros runs this script as: {name}.sh <command> [args...]
# AMBROS_PLUGIN_NAME, AMBROS_PLUGIN_COMMAND and AMBROS_PLUGIN_CONFIG (JSON)
# are set in the environment.

case "$1" in
    hello)
        echo "Hello from {name} plugin!"
        ;;
    info)
        echo "Plugin: {name} v{version}"
        echo "Config: $AMBROS_PLUGIN_CONFIG"
        ;;
    *)
        echo "Usage: $0 {{hello|info}}" >&2
        exit 1
        ;;
esac
"""

_README_TEMPLATE = """# {name} plugin

{description}

## Usage

```bash
ambros plugin enable {name}
ambros plugin run {name} hello
```

## Configuration

Edit plugin.json to change commands, hooks, configuration and dependencies.
The executable is {executable}.
"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PluginLifecycleManager:
    """Install, remove and configure plugins under the plugins directory.

    Mutations of one plugin name are serialized with a per-name lock and
    every mutation is recorded in a JSONL audit trail.
    """

    def __init__(
        self,
        runtime: PluginRuntime,
        resolver: PathResolver,
        registries_path: Path,
        audit_path: Optional[Path] = None,
        transport: Optional[httpx.BaseTransport] = None,
        http_timeout_sec: float = _DEFAULT_HTTP_TIMEOUT_SEC,
    ):
        self._runtime = runtime
        self._manifests = runtime.manifests
        self._registry = runtime.registry
        self._resolver = resolver
        self._registries_path = Path(registries_path)
        self._audit_path = Path(audit_path) if audit_path else self._registries_path.parent / "plugin-audit.jsonl"
        self._transport = transport
        self._http_timeout_sec = http_timeout_sec
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def list_plugins(self) -> List[DiscoveredPlugin]:
        return self._runtime.discover()

    def get_plugin(self, name: str) -> DiscoveredPlugin:
        return self._runtime.get(name)

    def install(self, source: str) -> PluginManifest:
        if Path(source).expanduser().exists():
            return self.install_from_path(Path(source).expanduser())
        if not is_valid_plugin_name(source):
            raise InvalidCommandError(f"invalid plugin name: {source}")
        return self.install_from_registry(source)

    def install_from_path(self, source_dir: Path, _visiting: FrozenSet[str] = frozenset()) -> PluginManifest:
        source_dir = Path(source_dir)
        if not source_dir.exists():
            raise NotFoundError(f"source path '{source_dir}' not found")
        if not source_dir.is_dir():
            raise InvalidCommandError(f"source path '{source_dir}' is not a directory")
        manifest = load_manifest(source_dir / MANIFEST_FILENAME)
        errors = validate_manifest(manifest)
        if errors:
            self._append_audit("install", manifest.name or "unknown", "failed", {"reason": "; ".join(errors[:3])})
            raise ConfigInvalidError("Invalid plugin manifest: " + "; ".join(errors))

        self.install_dependencies(manifest, _visiting | {manifest.name})

        with self._plugin_lock(manifest.name):
            dest = self._manifests.dir_for(manifest.name)
            ensure_dir_is_safe(dest)
            if dest.exists():
                self._append_audit("install", manifest.name, "failed", {"reason": "already_installed"})
                raise CommandExistsError(f"plugin '{manifest.name}' already exists at '{dest}'")
            self._manifests.root.mkdir(parents=True, exist_ok=True)
            try:
                _copy_plugin_tree(source_dir, dest)
                installed = manifest.model_copy(update={"enabled": True})
                self._check_executable(dest, installed)
                self._manifests.save(installed)
            except (AmbrosError, OSError) as exc:
                shutil.rmtree(dest, ignore_errors=True)
                self._append_audit("install", manifest.name, "failed", {"reason": str(exc)[:200]})
                if isinstance(exc, AmbrosError):
                    raise
                raise InternalServerError(f"failed to copy plugin files from '{source_dir}'", exc)
        self._append_audit("install", manifest.name, "success", {"source": str(source_dir)})
        logger.info("installed plugin %s into %s", manifest.name, dest)
        return installed

    def install_from_registry(self, name: str, _visiting: FrozenSet[str] = frozenset()) -> PluginManifest:
        registries = self.list_registries()
        if not registries:
            raise NotFoundError(
                "no registries configured. Add a registry with: ambros plugin registry add <name> <url>"
            )
        with httpx.Client(
            timeout=self._http_timeout_sec,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            for source in registries:
                base = f"{source.url.rstrip('/')}/{name}"
                manifest_url = f"{base}/{MANIFEST_FILENAME}"
                try:
                    resp = client.get(manifest_url)
                except httpx.HTTPError as exc:
                    logger.debug("registry=%s fetch failed: %s", source.name, exc)
                    continue
                if resp.status_code != 200:
                    logger.debug("registry=%s has no plugin %s (status %d)", source.name, name, resp.status_code)
                    continue
                try:
                    manifest = parse_manifest(resp.json())
                except (ValueError, ConfigInvalidError) as exc:
                    logger.debug("registry=%s returned an invalid manifest: %s", source.name, exc)
                    continue
                if manifest.name != name:
                    logger.debug("registry=%s returned manifest for %s, wanted %s", source.name, manifest.name, name)
                    continue
                errors = validate_manifest(manifest)
                if errors:
                    raise ConfigInvalidError("Invalid plugin manifest: " + "; ".join(errors))
                with tempfile.TemporaryDirectory(prefix="ambros-plugin-") as tmp:
                    staging = Path(tmp) / name
                    staging.mkdir()
                    (staging / MANIFEST_FILENAME).write_bytes(resp.content)
                    if manifest.type == PLUGIN_TYPE_SHELL:
                        self._download(client, f"{base}/{manifest.executable}", staging / manifest.executable)
                    return self.install_from_path(staging, _visiting)
        raise NotFoundError(f"plugin '{name}' not found in any configured registry")

    def check_dependencies(self, name: str) -> Dict[str, bool]:
        manifest = self._runtime.get(name).manifest
        return {dep: self._is_installed(dep) for dep in manifest.dependencies}

    def install_dependencies(self, manifest: PluginManifest, _visiting: FrozenSet[str] = frozenset()) -> List[str]:
        installed: List[str] = []
        for dep in manifest.dependencies:
            if self._is_installed(dep):
                logger.debug("dependency %s of %s already installed", dep, manifest.name)
                continue
            if dep in _visiting:
                raise ConfigInvalidError(f"dependency cycle detected at '{dep}'")
            logger.info("installing dependency %s of %s", dep, manifest.name)
            try:
                self.install_from_registry(dep, _visiting | {dep})
            except AmbrosError as exc:
                raise InternalServerError(f"failed to install dependency '{dep}'", exc)
            installed.append(dep)
        return installed

    def uninstall(self, name: str) -> bool:
        with self._plugin_lock(name):
            plugin_dir = self._manifests.dir_for(name)
            ensure_dir_is_safe(plugin_dir)
            if not plugin_dir.exists():
                return False
            shutil.rmtree(plugin_dir)
        self._append_audit("uninstall", name, "success", {})
        return True

    def enable(self, name: str) -> PluginManifest:
        with self._plugin_lock(name):
            manifest, plugin_dir = self._load_for_update(name)
            try:
                self._check_executable(plugin_dir, manifest)
            except AmbrosError as exc:
                self._append_audit("enable", name, "failed", {"reason": str(exc)[:200]})
                raise
            updated = manifest.model_copy(update={"enabled": True})
            self._manifests.save(updated)
        self._append_audit("enable", name, "success", {})
        return updated

    def disable(self, name: str) -> PluginManifest:
        with self._plugin_lock(name):
            manifest, _ = self._load_for_update(name)
            updated = manifest.model_copy(update={"enabled": False})
            self._manifests.save(updated)
        self._append_audit("disable", name, "success", {})
        return updated

    def list_config(self, name: str) -> Dict[str, str]:
        return dict(self._runtime.get(name).manifest.config)

    def get_config(self, name: str, key: str) -> str:
        config = self.list_config(name)
        if key not in config:
            raise NotFoundError(f"config key '{key}' not set for plugin '{name}'")
        return config[key]

    def set_config(self, name: str, key: str, value: str) -> PluginManifest:
        if not str(key or "").strip():
            raise ConfigInvalidError("config key is required")
        with self._plugin_lock(name):
            manifest, _ = self._load_for_update(name)
            config = dict(manifest.config)
            config[key] = str(value)
            updated = manifest.model_copy(update={"config": config})
            self._manifests.save(updated)
        self._append_audit("config_set", name, "success", {"key": key})
        return updated

    def create_plugin(self, name: str, description: str = "") -> Path:
        """Scaffold a disabled shell plugin with a script, manifest and README."""
        with self._plugin_lock(name):
            plugin_dir = self._manifests.dir_for(name)
            ensure_dir_is_safe(plugin_dir)
            if plugin_dir.exists():
                raise CommandExistsError(f"plugin '{name}' already exists at '{plugin_dir}'")
            manifest = PluginManifest(
                name=name,
                version="0.1.0",
                description=description or f"Custom plugin: {name}",
                author="",
                enabled=False,
                type=PLUGIN_TYPE_SHELL,
                executable=f"{name}.sh",
                commands=[
                    PluginCommandDef(name="hello", description="Print a greeting", usage="hello"),
                    PluginCommandDef(name="info", description="Show plugin information", usage="info"),
                ],
            )
            plugin_dir.mkdir(parents=True, mode=0o750)
            script = plugin_dir / manifest.executable
            script.write_text(
                _SCRIPT_TEMPLATE.format(name=name, description=manifest.description, version=manifest.version),
                encoding="utf-8",
            )
            os.chmod(script, 0o750)
            self._check_executable(plugin_dir, manifest)
            self._manifests.save(manifest)
            (plugin_dir / "README.md").write_text(
                _README_TEMPLATE.format(name=name, description=manifest.description, executable=manifest.executable),
                encoding="utf-8",
            )
        self._append_audit("create", name, "success", {})
        return plugin_dir

    def list_registries(self) -> List[PluginRegistrySource]:
        if not self._registries_path.exists():
            return []
        try:
            data = json.loads(self._registries_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigInvalidError(f"could not read {self._registries_path}", exc)
        rows = data.get("registries", []) if isinstance(data, dict) else []
        return [
            PluginRegistrySource(name=str(r.get("name") or ""), url=str(r.get("url") or ""))
            for r in rows
            if isinstance(r, dict)
        ]

    def add_registry(self, name: str, url: str) -> PluginRegistrySource:
        name = str(name or "").strip()
        if not name:
            raise ConfigInvalidError("registry name is required")
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as exc:
            raise ConfigInvalidError(f"invalid registry url: {url}", exc)
        if parsed.scheme not in {"http", "https"} or not parsed.host:
            raise ConfigInvalidError(f"registry url must be http(s): {url}")
        registries = self.list_registries()
        if any(r.name == name for r in registries):
            raise CommandExistsError(f"registry with name '{name}' already exists")
        entry = PluginRegistrySource(name=name, url=str(url).rstrip("/"))
        registries.append(entry)
        self._write_registries(registries)
        self._append_audit("registry_add", name, "success", {"url": entry.url})
        return entry

    def remove_registry(self, name: str) -> None:
        registries = self.list_registries()
        remaining = [r for r in registries if r.name != name]
        if len(remaining) == len(registries):
            raise NotFoundError(f"registry with name '{name}' not found")
        self._write_registries(remaining)
        self._append_audit("registry_remove", name, "success", {})

    def list_audit_events(self, limit: int = 200) -> List[PluginAuditEvent]:
        if not self._audit_path.exists():
            return []
        rows = self._audit_path.read_text(encoding="utf-8").splitlines()
        items: List[PluginAuditEvent] = []
        for raw in rows[-max(1, limit) :]:
            try:
                data = json.loads(raw)
                items.append(
                    PluginAuditEvent(
                        ts=datetime.fromisoformat(data["ts"]),
                        action=str(data.get("action") or ""),
                        plugin_name=str(data.get("plugin") or ""),
                        outcome=str(data.get("outcome") or ""),
                        details={k: str(v) for k, v in dict(data.get("details") or {}).items()},
                    )
                )
            except (ValueError, KeyError, TypeError):
                continue
        return items

    @contextmanager
    def _plugin_lock(self, name: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(name, threading.Lock())
        with lock:
            yield

    def _load_for_update(self, name: str):
        manifest = self._manifests.try_load(name)
        if manifest is not None:
            return manifest, self._manifests.dir_for(name)
        impl = self._registry.find(name)
        if impl is None:
            raise NotFoundError(f"plugin not found: {name}")
        # Built-in plugins get an on-disk manifest the first time their state changes.
        return impl.manifest.model_copy(deep=True), self._manifests.dir_for(name)

    def _check_executable(self, plugin_dir: Path, manifest: PluginManifest) -> None:
        if manifest.type == PLUGIN_TYPE_SHELL:
            self._resolver.resolve_plugin_executable(plugin_dir, manifest.executable)

    def _is_installed(self, name: str) -> bool:
        return self._manifests.exists(name) or self._registry.find(name) is not None

    def _download(self, client: httpx.Client, url: str, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            resp = client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotFoundError(f"failed to download {url}", exc)
        target.write_bytes(resp.content)
        os.chmod(target, 0o750)

    def _write_registries(self, registries: List[PluginRegistrySource]) -> None:
        self._registries_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"registries": [{"name": r.name, "url": r.url} for r in registries]}
        tmp = self._registries_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, self._registries_path)

    def _append_audit(self, action: str, plugin_name: str, outcome: str, details: Dict[str, str]) -> None:
        row = {
            "ts": _utc_now().isoformat(),
            "action": action,
            "plugin": plugin_name,
            "outcome": outcome,
            "details": details,
        }
        try:
            self._audit_path.parent.mkdir(parents=True, exist_ok=True)
            with self._audit_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("failed to append plugin audit event: %s", exc)


def _copy_plugin_tree(source: Path, dest: Path) -> None:
    """Copy regular files and directories; symlinks and special files are skipped.

    Permission bits are copied without setuid, setgid or sticky bits.
    """
    dest.mkdir(mode=0o750)
    for root, dirs, files in os.walk(source, followlinks=False):
        rel_root = Path(root).relative_to(source)
        for d in list(dirs):
            src_dir = Path(root) / d
            if src_dir.is_symlink():
                logger.warning("skipping symlinked directory in plugin source: %s", src_dir)
                dirs.remove(d)
                continue
            (dest / rel_root / d).mkdir(mode=stat.S_IMODE(src_dir.stat().st_mode) & 0o777 | 0o700)
        for f in files:
            src_file = Path(root) / f
            info = os.lstat(src_file)
            if not stat.S_ISREG(info.st_mode):
                logger.warning("skipping non-regular file in plugin source: %s", src_file)
                continue
            target = dest / rel_root / f
            shutil.copyfile(src_file, target, follow_symlinks=False)
            os.chmod(target, stat.S_IMODE(info.st_mode) & 0o777)
