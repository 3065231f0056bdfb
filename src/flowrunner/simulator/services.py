"""Simulated collaborators operations run against in tests and in simulator mode."""

from __future__ import annotations

import uuid
from typing import Any, Callable

from ..automation import conditions as condition_eval
from ..automation.errors import ActionError
from .state import CallRecord, SimulatorState


class BaseService:
    """Shared init and call recording for all simulated collaborators."""

    service_name: str = ""

    def __init__(self, state: SimulatorState):
        self.state = state

    def _record(self, action: str, params: dict, result: Any) -> None:
        self.state.calls.append(
            CallRecord(service=self.service_name, action=action, parameters=params, result=result)
        )


class CrudService(BaseService):
    """In-memory tables keyed by database and table name."""

    service_name = "crud"

    def seed(self, database: str, table: str, rows: list[dict]) -> None:
        self.state.tables.setdefault(database, {})[table] = [dict(row) for row in rows]

    def execute(
        self,
        database: str,
        table: str,
        operation: str,
        conditions: list[dict] | None = None,
        columns: list[str] | None = None,
        data: dict | None = None,
    ) -> list[dict]:
        rows = self.state.tables.setdefault(database, {}).setdefault(table, [])
        conditions = conditions or []
        columns = columns or []
        data = data or {}

        if operation == "create":
            row = {"id": self._next_id(rows), **data}
            rows.append(row)
            result = [self._project(row, columns)]
        elif operation == "read":
            result = [self._project(r, columns) for r in rows if self._matches(r, conditions)]
        elif operation == "update":
            result = []
            for row in rows:
                if self._matches(row, conditions):
                    row.update(data)
                    result.append(self._project(row, columns))
        elif operation == "delete":
            result = [r for r in rows if self._matches(r, conditions)]
            self.state.tables[database][table] = [r for r in rows if r not in result]
        else:
            raise ActionError(f"Unknown CRUD operation: {operation}", "invalid_operation")

        self._record(
            operation,
            {"database": database, "table": table, "conditions": conditions, "data": data},
            {"count": len(result)},
        )
        return result

    @staticmethod
    def _matches(row: dict, conditions: list[dict]) -> bool:
        return all(
            condition_eval.evaluate(row.get(c["field"]), c.get("operator", "=="), c.get("value"))
            for c in conditions
        )

    @staticmethod
    def _project(row: dict, columns: list[str]) -> dict:
        if not columns:
            return dict(row)
        return {col: row.get(col) for col in columns}

    @staticmethod
    def _next_id(rows: list[dict]) -> int:
        ids = [r["id"] for r in rows if isinstance(r.get("id"), int)]
        return max(ids, default=0) + 1


class FileService(BaseService):
    """Local files and remote objects held in memory."""

    service_name = "file"

    def execute(
        self,
        operation: str,
        protocol: str | None = None,
        url: str | None = None,
        source_path: str | None = None,
        target_path: str | None = None,
        bucket: str | None = None,
        content: Any = None,
    ) -> dict:
        params = {
            "protocol": protocol,
            "url": url,
            "source_path": source_path,
            "target_path": target_path,
            "bucket": bucket,
        }

        if operation == "download":
            location = self._remote_location(protocol, url, bucket, source_path)
            if location not in self.state.remote_files:
                raise ActionError(f"Remote file not found: {location}", "not_found")
            data = self.state.remote_files[location]
            if target_path:
                self.state.files[target_path] = data
            result = {"content": data, "path": target_path, "size": _size(data)}
        elif operation == "upload":
            data = content
            if data is None:
                if source_path not in self.state.files:
                    raise ActionError(f"Local file not found: {source_path}", "not_found")
                data = self.state.files[source_path]
            location = self._remote_location(protocol, url, bucket, target_path)
            self.state.remote_files[location] = data
            result = {"location": location, "size": _size(data)}
        elif operation == "delete":
            path = target_path or source_path
            if path and path in self.state.files:
                del self.state.files[path]
                result = {"path": path, "deleted": True}
            else:
                location = self._remote_location(protocol, url, bucket, path)
                if location not in self.state.remote_files:
                    raise ActionError(f"File not found: {path or location}", "not_found")
                del self.state.remote_files[location]
                result = {"location": location, "deleted": True}
        elif operation == "open":
            if source_path not in self.state.files:
                raise ActionError(f"Local file not found: {source_path}", "not_found")
            data = self.state.files[source_path]
            result = {"content": data, "path": source_path, "size": _size(data)}
        elif operation == "write":
            if not target_path:
                raise ActionError("write needs a target path", "invalid_operation")
            self.state.files[target_path] = content
            result = {"path": target_path, "size": _size(content)}
        else:
            raise ActionError(f"Unknown file operation: {operation}", "invalid_operation")

        self._record(operation, params, {k: v for k, v in result.items() if k != "content"})
        return result

    @staticmethod
    def _remote_location(
        protocol: str | None, url: str | None, bucket: str | None, key: str | None
    ) -> str:
        if protocol == "s3" and bucket:
            return f"s3://{bucket}/{(key or '').lstrip('/')}"
        return url or key or ""


class HttpService(BaseService):
    """Stubbed HTTP endpoints. Unrouted requests answer 404."""

    service_name = "http"

    def route(self, method: str, url: str, body: Any = None, status_code: int = 200) -> None:
        self.state.http_routes[f"{method.upper()} {url}"] = {
            "status_code": status_code,
            "body": body,
            "headers": {"content-type": "application/json"},
        }

    def request(
        self,
        method: str,
        url: str,
        headers: dict | None = None,
        body: Any = None,
        timeout: float | None = None,
    ) -> dict:
        route = self.state.http_routes.get(f"{method.upper()} {url}") or self.state.http_routes.get(url)
        if route is None:
            route = {"status_code": 404, "body": {"error": "not found"}, "headers": {}}

        status_code = route.get("status_code", 200)
        result = {
            "status_code": status_code,
            "headers": route.get("headers", {}),
            "body": route.get("body"),
        }
        self._record("request", {"method": method, "url": url, "headers": headers or {}, "body": body}, result)

        if status_code >= 400:
            raise ActionError(f"HTTP {method} {url} returned {status_code}", "http_error")
        return result


class ScriptService(BaseService):
    """Runs registered Python callables in place of script content."""

    service_name = "script"

    def __init__(self, state: SimulatorState):
        super().__init__(state)
        self.handlers: dict[str, Callable[[dict], Any]] = {}

    def register(self, content: str, handler: Callable[[dict], Any]) -> None:
        self.handlers[content] = handler

    def run(
        self,
        language: str,
        content: str,
        inputs: dict | None = None,
        timeout: float | None = None,
    ) -> dict:
        inputs = inputs or {}
        handler = self.handlers.get(content)
        if handler is None:
            result = {"exit_code": 0, "stdout": "", "inputs": inputs}
        else:
            try:
                output = handler(inputs)
            except ActionError:
                raise
            except Exception as e:
                raise ActionError(f"Script failed: {e}", "script_error") from e
            result = output if isinstance(output, dict) else {"result": output}
        self._record("run", {"language": language, "inputs": inputs}, result)
        return result


class MessagingService(BaseService):
    """Collects outgoing messages in an outbox."""

    service_name = "messaging"

    def send(
        self,
        channel: str,
        recipient: str | None = None,
        subject: str | None = None,
        message: str | None = None,
        webhook_url: str | None = None,
    ) -> dict:
        message_id = f"MSG-{uuid.uuid4().hex[:8].upper()}"
        entry = {
            "id": message_id,
            "channel": channel,
            "recipient": recipient,
            "subject": subject,
            "message": message,
            "webhook_url": webhook_url,
        }
        self.state.outbox.append(entry)
        result = {"message_id": message_id, "channel": channel, "recipient": recipient, "status": "sent"}
        self._record("send", entry, result)
        return result


class ManualService(BaseService):
    """Answers manual operations from pre-recorded operator responses."""

    service_name = "manual"

    def request(
        self,
        operation_id: str,
        instructions: str | None = None,
        assignee: str | None = None,
        inputs: dict | None = None,
    ) -> dict:
        response = dict(self.state.manual_responses.get(operation_id, {"approved": True}))
        self._record(
            "request",
            {"operation_id": operation_id, "instructions": instructions, "assignee": assignee},
            response,
        )
        if response.get("approved") is False:
            raise ActionError(
                f"Manual operation {operation_id} was rejected by {assignee or 'the operator'}",
                "manual_rejected",
            )
        return {"status": "completed", **response}


def _size(data: Any) -> int:
    if data is None:
        return 0
    if isinstance(data, (bytes, str)):
        return len(data)
    return len(str(data))
