import json
import tempfile
import unittest
from pathlib import Path

from ambros.domain.commands import CommandRecord
from ambros.errors import CommandExistsError, CommandNotFoundError, ConfigInvalidError
from ambros.execution.chain import CHAIN_RESULT_CATEGORY, ChainOrchestrator
from ambros.execution.executor import ProcessExecutor
from ambros.execution.path_resolver import PathResolver
from ambros.persistence.sqlite_store import SqliteCommandStore
from ambros.services.chain_service import ChainService
from ambros.services.command_service import CommandService


class TestChainService(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        plugins_dir = self.tmp / "plugins"
        plugins_dir.mkdir()
        self.store = SqliteCommandStore(self.tmp / "ambros.db")
        orchestrator = ChainOrchestrator(ProcessExecutor(PathResolver(plugins_dir)), self.store, backoff_unit_sec=0)
        self.service = ChainService(self.store, self.store, orchestrator, default_timeout_sec=120)
        for command_id, script in (("CMD-a", "echo a"), ("CMD-b", "echo b"), ("CMD-fail", "exit 1")):
            self.store.put(CommandRecord(command_id=command_id, name="sh", arguments=["-c", script], status=True))

    def tearDown(self):
        self._tmp.cleanup()

    def test_create_validates_references(self):
        spec = self.service.create("build", ["CMD-a", "CMD-b"], description="two steps")
        self.assertEqual(spec.timeout_sec, 120)
        self.assertEqual(self.service.get("build"), spec)
        with self.assertRaises(CommandExistsError):
            self.service.create("build", ["CMD-a"])
        with self.assertRaises(CommandNotFoundError):
            self.service.create("ghosts", ["CMD-a", "CMD-nope"])
        with self.assertRaises(ConfigInvalidError):
            self.service.create("empty", [])
        with self.assertRaises(ConfigInvalidError):
            self.service.create("negative", ["CMD-a"], retry_limit=-1)

    def test_execute_and_store(self):
        self.service.create("mixed", ["CMD-a", "CMD-fail", "CMD-b"], conditional=True)
        result = self.service.execute("mixed", store=True)
        self.assertEqual((result.success_count, result.failure_count), (2, 1))
        self.assertEqual(result.status, "partial")
        stored = self.store.search_by_tag("chain")
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].category, CHAIN_RESULT_CATEGORY)
        self.assertEqual(json.loads(stored[0].variables["data"])["chain_name"], "mixed")

    def test_plan_is_side_effect_free(self):
        self.service.create("p", ["CMD-a"])
        plan = self.service.plan("p")
        self.assertEqual(plan.commands[0].resolved_text, "sh -c 'echo a'")
        self.assertEqual(len(self.store.get_all_commands()), 3)

    def test_list_delete(self):
        self.service.create("one", ["CMD-a"])
        self.service.create("two", ["CMD-b"], parallel=True)
        self.assertEqual([c.name for c in self.service.list_chains()], ["one", "two"])
        self.service.delete("one")
        with self.assertRaises(CommandNotFoundError):
            self.service.delete("one")
        with self.assertRaises(CommandNotFoundError):
            self.service.execute("one")

    def test_chain_from_stored_command_that_never_ran(self):
        marker = self.tmp / "ran"
        commands = CommandService(ProcessExecutor(PathResolver(self.tmp / "plugins")), self.store)
        record = commands.store(["sh", "-c", f"touch {marker} && echo later"], name="CMD-later")
        self.assertFalse(marker.exists())

        self.service.create("deferred", [record.command_id, "CMD-a"])
        self.assertFalse(marker.exists())
        result = self.service.execute("deferred")
        self.assertTrue(marker.exists())
        self.assertEqual((result.success_count, result.failure_count), (2, 0))
        self.assertEqual(result.results[0].output, "later\n")

    def test_export_and_import(self):
        spec = self.service.create("shared", ["CMD-a"], retry_limit=2)
        target = self.service.export_chain("shared", self.tmp / "shared.json")
        self.assertEqual(json.loads(target.read_text(encoding="utf-8"))["retry_limit"], 2)
        with self.assertRaises(CommandExistsError):
            self.service.import_chain(target)
        self.service.delete("shared")
        self.assertEqual(self.service.import_chain(target), spec)
        self.assertEqual(self.service.import_chain(target, overwrite=True), spec)

        broken = self.tmp / "broken.json"
        broken.write_text("[1, 2]", encoding="utf-8")
        with self.assertRaises(ConfigInvalidError):
            self.service.import_chain(broken)


if __name__ == "__main__":
    unittest.main()
