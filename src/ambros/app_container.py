import logging
from dataclasses import dataclass
from typing import Optional

from ambros.config import Config
from ambros.execution.chain import ChainOrchestrator
from ambros.execution.executor import ProcessExecutor
from ambros.execution.path_resolver import PathResolver
from ambros.persistence.sqlite_store import SqliteCommandStore
from ambros.plugins.builtin import register_builtin_plugins
from ambros.plugins.lifecycle import PluginLifecycleManager
from ambros.plugins.manifest import ManifestStore
from ambros.plugins.registry import InProcessPluginRegistry
from ambros.plugins.runtime import PluginRuntime
from ambros.services.chain_service import ChainService
from ambros.services.command_service import CommandService

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    config: Config
    store: SqliteCommandStore
    resolver: PathResolver
    executor: ProcessExecutor
    registry: InProcessPluginRegistry
    plugins: PluginRuntime
    lifecycle: PluginLifecycleManager
    commands: CommandService
    chains: ChainService


def build_services(
    config: Config,
    executor: Optional[ProcessExecutor] = None,
    registry: Optional[InProcessPluginRegistry] = None,
) -> AppServices:
    config.config_dir.mkdir(parents=True, exist_ok=True)
    config.plugins_dir.mkdir(parents=True, exist_ok=True)

    resolver = PathResolver(config.plugins_dir)
    executor = executor or ProcessExecutor(resolver)
    store = SqliteCommandStore(config.db_path)

    if registry is None:
        registry = InProcessPluginRegistry()
        register_builtin_plugins(registry)
    manifests = ManifestStore(config.plugins_dir)
    plugins = PluginRuntime(manifests=manifests, registry=registry, resolver=resolver)
    lifecycle = PluginLifecycleManager(
        runtime=plugins,
        resolver=resolver,
        registries_path=config.registries_path,
        audit_path=config.config_dir / "plugin-audit.jsonl",
    )
    orchestrator = ChainOrchestrator(executor=executor, repository=store)
    logger.debug("services ready (db=%s, plugins=%s)", config.db_path, config.plugins_dir)
    return AppServices(
        config=config,
        store=store,
        resolver=resolver,
        executor=executor,
        registry=registry,
        plugins=plugins,
        lifecycle=lifecycle,
        commands=CommandService(executor=executor, repository=store, plugins=plugins),
        chains=ChainService(
            chains=store,
            commands=store,
            orchestrator=orchestrator,
            default_timeout_sec=config.chain_timeout_sec,
        ),
    )
