import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

from ambros.api.app import create_app
from ambros.app_container import build_services
from ambros.config import load_config


class TestApi(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        with patch.dict(os.environ, {}, clear=False):
            for key in ("AMBROS_PLUGINS_DIR", "AMBROS_DB_PATH", "AMBROS_CHAIN_TIMEOUT_SEC"):
                os.environ.pop(key, None)
            self.services = build_services(load_config(Path(self._tmp.name)))
        self.client = TestClient(create_app(self.services))

    def tearDown(self):
        self._tmp.cleanup()

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_commands_listing_detail_and_delete(self):
        first = self.services.commands.run(["sh", "-c", "echo api"], tags=["web"])
        self.services.commands.run(["sh", "-c", "true"])
        listing = self.client.get("/commands").json()
        self.assertEqual(len(listing), 2)
        tagged = self.client.get("/commands", params={"tag": "web"}).json()
        self.assertEqual([c["command_id"] for c in tagged], [first.record.command_id])

        detail = self.client.get(f"/commands/{first.record.command_id}").json()
        self.assertEqual(detail["output"], "api\n")
        self.assertEqual(detail["command"], "sh -c 'echo api'")

        self.assertEqual(self.client.delete(f"/commands/{first.record.command_id}").status_code, 200)
        missing = self.client.get(f"/commands/{first.record.command_id}")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "command_not_found")

    def test_limit_bounds(self):
        self.assertEqual(self.client.get("/commands", params={"limit": 0}).status_code, 400)

    def test_chains_and_dry_run(self):
        outcome = self.services.commands.run(["sh", "-c", "echo step"])
        self.services.chains.create("api-chain", [outcome.record.command_id], description="from api")
        self.assertEqual([c["name"] for c in self.client.get("/chains").json()], ["api-chain"])
        self.assertEqual(self.client.get("/chains/api-chain").json()["description"], "from api")
        plan = self.client.post("/chains/api-chain/dry-run").json()
        self.assertEqual(plan["commands"][0]["resolved_text"], "sh -c 'echo step'")
        self.assertEqual(len(self.services.commands.recent(10)), 1)
        self.assertEqual(self.client.get("/chains/nope").status_code, 404)

    def test_plugins_listing_includes_builtin(self):
        plugins = self.client.get("/plugins").json()
        example = next(p for p in plugins if p["name"] == "example")
        self.assertEqual(example["source"], "builtin")
        self.assertEqual(example["type"], "internal")
        self.assertIn("hello", example["commands"])


if __name__ == "__main__":
    unittest.main()
