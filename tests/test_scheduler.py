import asyncio
import random
import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from flowrunner.automation.errors import AutomationDisabledError
from flowrunner.automation.report import RunStatus
from flowrunner.automation.schema import Automation
from flowrunner.automation.scheduler import AutomationScheduler
from flowrunner.simulator import create_simulator
from flowrunner.simulator.failures import FailureConfig, FailureRule


class FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _automation(operations: list[dict], **fields) -> Automation:
    return Automation.model_validate({"id": "auto-1", "name": "Test Automation", "operations": operations, **fields})


def _http(op_id: str, order: int, url: str, method: str = "GET", **fields) -> dict:
    return {
        "id": op_id,
        "name": op_id,
        "order": order,
        "type": "http_request",
        "config": {"httpRequestMethod": method, "httpRequestUrl": url},
        **fields,
    }


def _message(op_id: str, order: int, text: str, **fields) -> dict:
    return {
        "id": op_id,
        "name": op_id,
        "order": order,
        "type": "messaging",
        "config": {"messagingType": "slack", "recipient": "#ops", "message": text},
        **fields,
    }


def _logic(op_id: str, order: int, **fields) -> dict:
    return {
        "id": op_id,
        "order": order,
        "type": "logic_conditions",
        "config": {"operations": [{"operator": "+", "outputName": "x", "operands": [{"value": 1}]}]},
        **fields,
    }


class AutomationSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state, self.services, _ = create_simulator()
        self.sleep = FakeSleep()

    def _run(self, automation: Automation, inputs=None, **kwargs):
        failure_config = kwargs.pop("failure_config", None)
        max_steps = kwargs.pop("max_steps", 1000)
        scheduler = AutomationScheduler(
            self.services, failure_config=failure_config, max_steps=max_steps, sleep=self.sleep
        )
        return asyncio.run(scheduler.run(automation, inputs, **kwargs))

    def test_read_then_request_then_delay_and_end(self):
        self.services["crud"].seed(
            "main",
            "users",
            [{"id": 1, "email": "ada@example.com"}, {"id": 2, "email": "bob@example.com"}],
        )
        self.services["http"].route(
            "POST", "https://api.example.com/notify", {"queued": True, "id": "n-1"}
        )
        automation = _automation(
            [
                {
                    "id": "op_a",
                    "name": "Load user",
                    "order": 1,
                    "type": "crud_operation",
                    "config": {
                        "database": "main",
                        "table": "users",
                        "operation": "read",
                        "conditions": [
                            {"field": "id", "operator": "==", "source": "automation_input", "value": "userId"}
                        ],
                    },
                },
                {
                    **_http("op_b", 2, "https://api.example.com/notify", "POST"),
                    "inputMappings": [
                        {
                            "parameterName": "email",
                            "source": "previous_operation",
                            "sourceOperationId": "op_a",
                            "sourceParameter": "row.email",
                        }
                    ],
                    "outputParameters": [{"name": "notificationId", "path": "body.id"}],
                },
                {
                    "id": "op_c",
                    "order": 3,
                    "type": "delay",
                    "config": {"delayDuration": 2, "delayUnit": "seconds"},
                    "onSuccess": {"action": "end"},
                },
                _message("op_d", 4, "should never be sent"),
            ],
            inputParameters=[{"name": "userId", "type": "number", "required": True}],
            outputParameters=[
                {"name": "notificationId", "source": "operation_output", "sourceOperationId": "op_b", "sourceParameter": "notificationId"},
                {"name": "done", "source": "constant", "value": "true"},
            ],
        )

        result = self._run(automation, {"userId": "1"})

        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(result.outputs, {"notificationId": "n-1", "done": True})
        self.assertEqual(self.sleep.calls, [2.0])
        http_call = self.state.calls_to("http")[0]
        self.assertEqual(http_call.parameters["body"], {"email": "ada@example.com"})
        self.assertEqual(self.state.outbox, [])
        self.assertEqual(
            [s.operation_id for s in result.trace.steps], ["op_a", "op_b", "op_c"]
        )
        self.assertEqual(result.steps, 3)

    def test_operation_retries_exhausted_reaches_automation_failure_policy(self):
        automation = _automation(
            [
                _http(
                    "op_call",
                    1,
                    "https://api.example.com/down",
                    onFailure={"action": "retry", "retryCount": 3, "retryDelay": 1},
                ),
                _message("op_notify", 2, "call failed"),
            ],
            onFailure={"action": "goto_operation", "operationId": "op_notify"},
        )

        result = self._run(automation)

        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(len(self.state.calls_to("http")), 4)
        retrying = [s for s in result.trace.steps if s.status == "retrying"]
        self.assertEqual(len(retrying), 3)
        self.assertEqual(self.sleep.calls, [1.0, 1.0, 1.0])
        self.assertEqual(result.errors[0]["error_type"], "RetriesExhausted")
        self.assertEqual(result.errors[1]["error_type"], "ActionFailure")
        self.assertEqual(len(self.state.outbox), 1)

    def test_escalation_without_policy_fails_the_run(self):
        automation = _automation([_http("op_call", 1, "https://api.example.com/down")])

        result = self._run(automation)

        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.errors[0]["error_type"], "ActionFailure")
        self.assertEqual(result.errors[0]["operation_id"], "op_call")
        self.assertEqual(result.errors[0]["reason"], "http_error")

    def test_automation_retry_reruns_from_the_start(self):
        self.services["http"].route("GET", "https://api.example.com/flaky", {"ok": True})
        failures = FailureConfig(
            rules={"http.request": FailureRule(error_type="timeout", message="slow", max_failures=1)}
        )
        automation = _automation(
            [_logic("op_first", 1), _http("op_call", 2, "https://api.example.com/flaky")],
            onFailure={"action": "retry", "retryCount": 2, "retryDelay": 5},
        )

        result = self._run(automation, failure_config=failures)

        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(self.sleep.calls, [5.0])
        self.assertEqual(len(result.trace.for_operation("op_first")), 2)
        self.assertEqual(result.errors[0]["error_type"], "ActionFailure")

    def test_automation_retry_exhausted(self):
        automation = _automation(
            [_http("op_call", 1, "https://api.example.com/down")],
            onFailure={"action": "retry", "retryCount": 1},
        )

        result = self._run(automation)

        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.attempts, 2)
        self.assertIn("RetriesExhausted", [e["error_type"] for e in result.errors])

    def test_goto_cycle_hits_step_budget(self):
        automation = _automation(
            [_logic("op_loop", 1, onSuccess={"action": "goto", "targetOperationId": "op_loop"})]
        )

        result = self._run(automation, max_steps=10)

        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.steps, 10)
        self.assertEqual(result.errors[-1]["error_type"], "StepLimitExceeded")

    def test_step_budget_ignores_automation_policy(self):
        automation = _automation(
            [_logic("op_loop", 1, onSuccess={"action": "goto", "targetOperationId": "op_loop"})],
            onFailure={"action": "retry", "retryCount": 5},
        )
        result = self._run(automation, max_steps=4)
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.attempts, 1)

    def test_goto_on_failure_jumps_to_recovery(self):
        automation = _automation(
            [
                _http(
                    "op_call",
                    1,
                    "https://api.example.com/down",
                    onFailure={"action": "goto", "targetOperationId": "op_recover"},
                ),
                _message("op_skipped", 2, "not reached"),
                _message("op_recover", 3, "recovered"),
            ]
        )

        result = self._run(automation)

        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual([m["message"] for m in self.state.outbox], ["recovered"])
        self.assertEqual(result.errors[0]["error_type"], "ActionFailure")

    def test_end_on_failure_succeeds(self):
        automation = _automation(
            [
                _http("op_call", 1, "https://api.example.com/down", onFailure={"action": "end"}),
                _message("op_after", 2, "not reached"),
            ]
        )
        result = self._run(automation)
        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(self.state.outbox, [])

    def test_alert_on_failure_continues(self):
        automation = _automation(
            [
                _http(
                    "op_call",
                    1,
                    "https://api.example.com/down",
                    onFailure={"action": "alert", "alertMessage": "heads up"},
                ),
                _message("op_after", 2, "still running"),
            ]
        )
        result = self._run(automation)
        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(result.alerts, ["heads up"])
        self.assertEqual(len(self.state.outbox), 1)

    def test_goto_integration_routing_hands_off(self):
        automation = _automation(
            [
                _logic("op_first", 1, onSuccess={"action": "goto_integration", "integrationId": "crm"}),
                _message("op_after", 2, "not reached"),
            ]
        )
        result = self._run(automation)
        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(result.handoff.integration_id, "crm")
        self.assertEqual(self.state.outbox, [])

    def test_goto_integration_policy_fails_with_handoff(self):
        automation = _automation(
            [_http("op_call", 1, "https://api.example.com/down")],
            onFailure={"action": "goto_integration", "integrationId": "pager"},
        )
        result = self._run(automation)
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.handoff.integration_id, "pager")
        self.assertEqual(result.handoff.reason, "failure_policy")

    def test_skipped_source_leaves_output_unset(self):
        automation = _automation(
            [
                _logic(
                    "op_maybe",
                    1,
                    runCondition={"enabled": True, "field": "flag", "operator": "==", "value": True},
                ),
                _message("op_after", 2, "ran"),
            ],
            inputParameters=[{"name": "flag", "type": "boolean", "defaultValue": False}],
            outputParameters=[
                {"name": "x", "source": "operation_output", "sourceOperationId": "op_maybe", "sourceParameter": "x"}
            ],
        )
        result = self._run(automation)
        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(result.outputs, {"x": None})
        self.assertEqual(result.trace.steps[0].status, "skipped")

    def test_missing_required_input_fails_before_start(self):
        automation = _automation(
            [_logic("op_first", 1)],
            inputParameters=[{"name": "email", "type": "string", "required": True}],
        )
        result = self._run(automation, {})
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.errors[0]["error_type"], "UnknownParameter")
        self.assertEqual(result.trace.steps, [])

    def test_omitted_optional_input_resolves_to_none(self):
        automation = _automation(
            [
                {
                    **_http("op_post", 1, "https://api.example.com/notes", "POST"),
                    "inputMappings": [
                        {"parameterName": "note", "source": "automation_input", "sourceParameter": "note"}
                    ],
                }
            ],
            inputParameters=[{"name": "note", "type": "string", "required": False}],
        )
        result = self._run(automation, {})
        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        self.assertEqual(self.state.calls_to("http")[0].parameters["body"], {"note": None})

    def test_disabled_automation_is_rejected(self):
        automation = _automation([_logic("op_first", 1)], enabled=False)
        with self.assertRaises(AutomationDisabledError):
            self._run(automation)

    def test_cancelled_run_is_aborted(self):
        event = asyncio.Event()
        event.set()
        automation = _automation([_logic("op_first", 1)])
        result = self._run(automation, cancel_event=event)
        self.assertEqual(result.status, RunStatus.ABORTED)
        self.assertEqual(result.steps, 0)

    def test_timeout_aborts_the_run(self):
        automation = _automation(
            [{"id": "op_wait", "order": 1, "type": "delay", "config": {"delayDuration": 30, "delayUnit": "seconds"}}]
        )
        scheduler = AutomationScheduler(self.services)
        result = asyncio.run(scheduler.run(automation, timeout=0.05))
        self.assertEqual(result.status, RunStatus.ABORTED)
        self.assertEqual(result.errors[0]["error_type"], "Timeout")

    def test_concurrent_runs_do_not_share_context(self):
        automation = _automation(
            [
                {
                    "id": "op_double",
                    "order": 1,
                    "type": "logic_conditions",
                    "config": {
                        "operations": [
                            {
                                "operator": "*",
                                "outputName": "doubled",
                                "operands": [{"source": "automation_input", "value": "n"}, {"value": 2}],
                            }
                        ]
                    },
                },
                {"id": "op_wait", "order": 2, "type": "delay", "config": {"delayDuration": 10, "delayUnit": "milliseconds"}},
            ],
            outputParameters=[
                {"name": "doubled", "source": "operation_output", "sourceOperationId": "op_double", "sourceParameter": "doubled"}
            ],
        )
        scheduler = AutomationScheduler(self.services)

        async def both():
            return await asyncio.gather(
                scheduler.run(automation, {"n": 1}), scheduler.run(automation, {"n": 21})
            )

        first, second = asyncio.run(both())
        self.assertEqual(first.outputs, {"doubled": 2})
        self.assertEqual(second.outputs, {"doubled": 42})
        self.assertNotEqual(first.run_id, second.run_id)


class ForwardReferenceTests(unittest.TestCase):
    def test_random_graphs_reject_forward_references(self):
        rng = random.Random(20240501)
        for _ in range(60):
            size = rng.randint(1, 6)
            ops = []
            violates = False
            for order in range(1, size + 1):
                op = _logic(f"op_{order}", order)
                if rng.random() < 0.6:
                    source_order = rng.randint(1, size)
                    violates = violates or source_order >= order
                    op["inputMappings"] = [
                        {
                            "parameterName": "upstream",
                            "source": "previous_operation",
                            "sourceOperationId": f"op_{source_order}",
                        }
                    ]
                ops.append(op)
            automation = _automation(ops)
            state, services, _ = create_simulator()

            result = asyncio.run(AutomationScheduler(services).run(automation))

            if violates:
                self.assertEqual(result.status, RunStatus.FAILED)
                self.assertEqual(result.errors[0]["error_type"], "OperationNotYetExecuted")
                self.assertEqual(result.trace.steps, [])
            else:
                self.assertEqual(result.status, RunStatus.SUCCEEDED)
                self.assertEqual(result.steps, size)


if __name__ == "__main__":
    unittest.main()
