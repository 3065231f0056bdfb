"""Script connector: runs script content in a subprocess with an allow-listed environment."""

from __future__ import annotations

import asyncio
import json
import os
import signal
import subprocess
import sys
import tempfile
from typing import TYPE_CHECKING, Any

from ..automation.errors import ActionError
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

MAX_OUTPUT_CHARS = 50_000

_SAFE_ENV_KEYS = {
    "PATH",
    "HOME",
    "LANG",
    "TERM",
    "TMPDIR",
    "USER",
    "LOGNAME",
    "SHELL",
}

_SAFE_ENV_PREFIXES = ("LC_",)

_INTERPRETERS = {
    "python": [sys.executable, "-c"],
    "javascript": ["node", "-e"],
    "bash": ["bash", "-c"],
}


def _safe_env() -> dict[str, str]:
    """Build an environment dict using a strict allowlist."""
    out: dict[str, str] = {}
    for k, v in os.environ.items():
        if k in _SAFE_ENV_KEYS or any(k.startswith(p) for p in _SAFE_ENV_PREFIXES):
            out[k] = v
    return out


def _kill_group(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    try:
        proc.wait(timeout=1)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        proc.wait()


def parse_script_output(stdout: str) -> dict[str, Any]:
    """The last stdout line, when it is a JSON object, becomes the script's outputs."""
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            value = json.loads(line)
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {"result": value}
    return {}


@register
class ScriptConnector(BaseConnector):
    """Runs ``run_script`` operations.

    Operation inputs arrive as a JSON object on stdin. A script reports outputs
    by printing a JSON object as its last line of stdout. Disabled unless
    ALLOW_SCRIPT_EXECUTION is set.
    """

    kind = "script"

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return settings.allow_script_execution

    async def run(
        self,
        language: str,
        content: str,
        inputs: dict | None = None,
        timeout: float | None = None,
    ) -> dict:
        if not self.settings.allow_script_execution:
            self._fail("Script execution is disabled", "not_configured")
        command = _INTERPRETERS.get(language)
        if command is None:
            self._fail(f"Unsupported script language: {language}", "invalid_config")

        timeout = timeout or self.settings.script_timeout
        payload = json.dumps(inputs or {}, default=str)
        stdout, stderr, returncode, timed_out = await asyncio.to_thread(
            self._run_sync, command + [content], payload, timeout
        )
        if timed_out:
            self._fail(f"Script timed out after {timeout}s", "timeout")

        result: dict[str, Any] = {
            "exit_code": returncode,
            "stdout": stdout[-MAX_OUTPUT_CHARS:],
            "stderr": stderr[-MAX_OUTPUT_CHARS:],
        }
        if returncode != 0:
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {returncode}"
            raise ActionError(f"Script failed: {detail}", "script_error")
        result.update(parse_script_output(stdout))
        return result

    @staticmethod
    def _run_sync(argv: list[str], payload: str, timeout: float) -> tuple[str, str, int, bool]:
        """Returns (stdout, stderr, returncode, timed_out)."""
        with tempfile.TemporaryDirectory(prefix="flowrunner-script-") as cwd:
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=cwd,
                    env=_safe_env(),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    start_new_session=True,
                )
            except OSError as e:
                raise ActionError(f"Cannot start {argv[0]}: {e}", "script_error") from e
            try:
                stdout, stderr = proc.communicate(payload, timeout=timeout)
            except subprocess.TimeoutExpired:
                _kill_group(proc)
                proc.communicate()
                return "", "", -1, True
            return stdout, stderr, proc.returncode, False
