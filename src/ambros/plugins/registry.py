import threading
from typing import Dict, List, Optional

from ambros.domain.contracts import InProcessPlugin
from ambros.errors import CommandExistsError, CommandNotFoundError


class InProcessPluginRegistry:
    """Explicit handle for plugins implemented in Python and loaded in-process.

    Created once by the application container and passed to whatever needs
    it; there is no module-level registry.
    """

    def __init__(self) -> None:
        self._plugins: Dict[str, InProcessPlugin] = {}
        self._lock = threading.RLock()

    def register(self, plugin: InProcessPlugin) -> None:
        name = plugin.manifest.name
        with self._lock:
            if name in self._plugins:
                raise CommandExistsError(f"in-process plugin already registered: {name}")
            self._plugins[name] = plugin

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._plugins.pop(name, None) is not None

    def get(self, name: str) -> InProcessPlugin:
        with self._lock:
            plugin = self._plugins.get(name)
        if plugin is None:
            raise CommandNotFoundError(f"in-process plugin not registered: {name}")
        return plugin

    def find(self, name: str) -> Optional[InProcessPlugin]:
        with self._lock:
            return self._plugins.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._plugins)
