import asyncio
import json
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import httpx

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from flowrunner.automation.errors import ActionError
from flowrunner.config import Settings
from flowrunner.connectors import close_service_layer, create_service_layer
from flowrunner.connectors.base import BaseConnector
from flowrunner.connectors.crud import CrudConnector
from flowrunner.connectors.files import FileConnector
from flowrunner.connectors.http import HttpConnector
from flowrunner.connectors.messaging import MessagingConnector
from flowrunner.connectors.script import ScriptConnector, parse_script_output
from flowrunner.simulator.services import CrudService, ManualService


def _run_with_client(handler, call):
    """Run ``call(client)`` with an AsyncClient answering from ``handler``."""

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await call(client)

    return asyncio.run(scenario())


class HttpConnectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = Settings()

    def test_json_request_and_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(201, json={"id": "abc"})

        result = _run_with_client(
            handler,
            lambda client: HttpConnector(self.settings, client).request(
                "POST", "https://api.example.com/items", {"Authorization": "Bearer t"}, {"name": "x"}
            ),
        )

        self.assertEqual(result["status_code"], 201)
        self.assertEqual(result["body"], {"id": "abc"})
        self.assertEqual(seen, {"method": "POST", "body": {"name": "x"}, "auth": "Bearer t"})

    def test_text_body_and_empty_response(self):
        result = _run_with_client(
            lambda request: httpx.Response(200, text="plain"),
            lambda client: HttpConnector(self.settings, client).request("GET", "https://api.example.com/"),
        )
        self.assertEqual(result["body"], "plain")

        empty = _run_with_client(
            lambda request: httpx.Response(204),
            lambda client: HttpConnector(self.settings, client).request("DELETE", "https://api.example.com/1"),
        )
        self.assertIsNone(empty["body"])

    def test_error_status_raises(self):
        with self.assertRaises(ActionError) as ctx:
            _run_with_client(
                lambda request: httpx.Response(500, json={"error": "boom"}),
                lambda client: HttpConnector(self.settings, client).request("GET", "https://api.example.com/"),
            )
        self.assertEqual(ctx.exception.reason, "http_error")

    def test_timeout_is_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with self.assertRaises(ActionError) as ctx:
            _run_with_client(
                handler,
                lambda client: HttpConnector(self.settings, client).request("GET", "https://api.example.com/"),
            )
        self.assertEqual(ctx.exception.reason, "timeout")
        self.assertIsInstance(ctx.exception.__cause__, httpx.TimeoutException)


class CrudConnectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp_dir = Path(tempfile.mkdtemp(prefix="crud-connector-tests-"))
        self.connector = CrudConnector(Settings(crud_data_dir=str(self.tmp_dir)), None)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _execute(self, operation, **kwargs):
        return asyncio.run(self.connector.execute("main", "users", operation, **kwargs))

    def test_create_read_update_delete(self):
        ada = self._execute("create", data={"email": "ada@example.com", "active": 1})[0]
        self._execute("create", data={"email": "bob@example.com", "active": 0, "team": "ops"})

        self.assertEqual(ada["id"], 1)
        self.assertTrue((self.tmp_dir / "main.db").exists())

        active = self._execute("read", conditions=[{"field": "active", "operator": "==", "value": 1}])
        self.assertEqual([r["email"] for r in active], ["ada@example.com"])

        found = self._execute(
            "read",
            conditions=[{"field": "email", "operator": "contains", "value": "bob"}],
            columns=["email", "team"],
        )
        self.assertEqual(found, [{"email": "bob@example.com", "team": "ops"}])

        updated = self._execute(
            "update",
            conditions=[{"field": "id", "operator": "==", "value": 1}],
            data={"active": 0},
        )
        self.assertEqual(updated[0]["active"], 0)

        removed = self._execute("delete", conditions=[{"field": "team", "operator": "exists"}])
        self.assertEqual([r["email"] for r in removed], ["bob@example.com"])
        self.assertEqual(len(self._execute("read")), 1)

    def test_missing_table(self):
        with self.assertRaises(ActionError) as ctx:
            self._execute("read")
        self.assertEqual(ctx.exception.reason, "not_found")

    def test_invalid_identifier(self):
        self._execute("create", data={"email": "a@example.com"})
        with self.assertRaises(ActionError) as ctx:
            self._execute("read", conditions=[{"field": "email; DROP TABLE users", "value": "x"}])
        self.assertEqual(ctx.exception.reason, "invalid_config")


class FileConnectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp_dir = Path(tempfile.mkdtemp(prefix="file-connector-tests-"))
        self.connector = FileConnector(Settings(file_root=str(self.tmp_dir)), None)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_write_open_delete(self):
        written = asyncio.run(self.connector.execute("write", target_path="reports/a.txt", content="hello"))
        self.assertEqual(written, {"path": "reports/a.txt", "size": 5})
        self.assertEqual((self.tmp_dir / "reports" / "a.txt").read_text(), "hello")

        opened = asyncio.run(self.connector.execute("open", source_path="reports/a.txt"))
        self.assertEqual(opened["content"], "hello")
        self.assertEqual(opened["encoding"], "utf-8")

        deleted = asyncio.run(self.connector.execute("delete", target_path="reports/a.txt"))
        self.assertTrue(deleted["deleted"])
        self.assertFalse((self.tmp_dir / "reports" / "a.txt").exists())

    def test_local_file_io_runs_off_the_event_loop(self):
        with mock.patch.object(asyncio, "to_thread", wraps=asyncio.to_thread) as to_thread:
            asyncio.run(self.connector.execute("write", target_path="a.txt", content="hi"))
            asyncio.run(self.connector.execute("open", source_path="a.txt"))
            asyncio.run(self.connector.execute("delete", target_path="a.txt"))
        self.assertEqual(to_thread.call_count, 3)
        self.assertFalse((self.tmp_dir / "a.txt").exists())

    def test_binary_content_is_base64(self):
        (self.tmp_dir / "blob.bin").write_bytes(b"\xff\xfe\x00")
        opened = asyncio.run(self.connector.execute("open", source_path="blob.bin"))
        self.assertEqual(opened["encoding"], "base64")
        self.assertEqual(opened["size"], 3)

    def test_paths_cannot_escape_root(self):
        with self.assertRaises(ActionError) as ctx:
            asyncio.run(self.connector.execute("write", target_path="../outside.txt", content="x"))
        self.assertEqual(ctx.exception.reason, "invalid_path")

    def test_missing_file(self):
        with self.assertRaises(ActionError) as ctx:
            asyncio.run(self.connector.execute("open", source_path="nope.txt"))
        self.assertEqual(ctx.exception.reason, "not_found")

    def test_http_download_to_file_root(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"remote data")

        async def call(client):
            connector = FileConnector(Settings(file_root=str(self.tmp_dir)), client)
            return await connector.execute(
                "download", protocol="http", url="https://files.example.com/a", target_path="in/a.txt"
            )

        result = _run_with_client(handler, call)

        self.assertEqual(result["content"], "remote data")
        self.assertEqual((self.tmp_dir / "in" / "a.txt").read_bytes(), b"remote data")

    def test_s3_requires_configuration(self):
        with self.assertRaises(ActionError) as ctx:
            asyncio.run(
                self.connector.execute("upload", protocol="s3", bucket="b", target_path="k", content="x")
            )
        self.assertEqual(ctx.exception.reason, "not_configured")


class MessagingConnectorTests(unittest.TestCase):
    def test_webhook(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"received": True})

        result = _run_with_client(
            handler,
            lambda client: MessagingConnector(Settings(), client).send(
                "webhook", recipient="ops", message="deployed", webhook_url="https://hooks.example.com/x"
            ),
        )

        self.assertEqual(result["status"], "sent")
        self.assertEqual(result["response"], {"received": True})
        self.assertEqual(seen["url"], "https://hooks.example.com/x")
        self.assertEqual(seen["payload"], {"recipient": "ops", "subject": None, "message": "deployed"})

    def test_slack(self):
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.headers["authorization"], "Bearer xoxb-test")
            return httpx.Response(200, json={"ok": True, "ts": "1700.1", "channel": "C1"})

        result = _run_with_client(
            handler,
            lambda client: MessagingConnector(Settings(slack_bot_token="xoxb-test"), client).send(
                "slack", recipient="#ops", message="hi"
            ),
        )
        self.assertEqual(result["message_id"], "1700.1")

    def test_slack_api_error(self):
        with self.assertRaises(ActionError) as ctx:
            _run_with_client(
                lambda request: httpx.Response(200, json={"ok": False, "error": "channel_not_found"}),
                lambda client: MessagingConnector(Settings(slack_bot_token="xoxb-test"), client).send(
                    "slack", recipient="#nope", message="hi"
                ),
            )
        self.assertEqual(ctx.exception.reason, "slack_error")

    def test_unconfigured_email(self):
        with self.assertRaises(ActionError) as ctx:
            asyncio.run(MessagingConnector(Settings(), None).send("email", recipient="a@example.com"))
        self.assertEqual(ctx.exception.reason, "not_configured")


class ScriptConnectorTests(unittest.TestCase):
    def test_disabled_by_default(self):
        connector = ScriptConnector(Settings(), None)
        with self.assertRaises(ActionError) as ctx:
            asyncio.run(connector.run("python", "print(1)"))
        self.assertEqual(ctx.exception.reason, "not_configured")

    def test_python_script_reads_inputs_and_reports_outputs(self):
        connector = ScriptConnector(Settings(allow_script_execution=True), None)
        script = "import json, sys\nd = json.load(sys.stdin)\nprint('working')\nprint(json.dumps({'doubled': d['n'] * 2}))"

        result = asyncio.run(connector.run("python", script, {"n": 21}, timeout=30))

        self.assertEqual(result["exit_code"], 0)
        self.assertEqual(result["doubled"], 42)

    def test_failing_script(self):
        connector = ScriptConnector(Settings(allow_script_execution=True), None)
        with self.assertRaises(ActionError) as ctx:
            asyncio.run(connector.run("python", "raise SystemExit(3)", timeout=30))
        self.assertEqual(ctx.exception.reason, "script_error")

    def test_parse_script_output(self):
        self.assertEqual(parse_script_output('log\n{"a": 1}\n'), {"a": 1})
        self.assertEqual(parse_script_output("7"), {"result": 7})
        self.assertEqual(parse_script_output("not json"), {})
        self.assertEqual(parse_script_output(""), {})


class ServiceLayerTests(unittest.TestCase):
    def test_simulator_mode(self):
        _, services, _ = create_service_layer(Settings(connector_mode="simulator"))
        self.assertIsInstance(services["crud"], CrudService)
        self.assertFalse(any(isinstance(s, BaseConnector) for s in services.values()))

    def test_hybrid_mode_uses_configured_connectors(self):
        tmp_dir = tempfile.mkdtemp(prefix="service-layer-tests-")
        try:
            settings = Settings(connector_mode="hybrid", crud_data_dir=tmp_dir, file_root=tmp_dir)
            _, services, _ = create_service_layer(settings)

            self.assertIsInstance(services["http"], HttpConnector)
            self.assertIsInstance(services["crud"], CrudConnector)
            self.assertIsInstance(services["file"], FileConnector)
            self.assertNotIsInstance(services["script"], BaseConnector)
            self.assertIsInstance(services["manual"], ManualService)

            client = services["_http_client"]
            asyncio.run(close_service_layer(services))
            self.assertTrue(client.is_closed)
            self.assertNotIn("_http_client", services)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
