import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from flowrunner.automation.context import ExecutionContext
from flowrunner.automation.errors import (
    ArityError,
    DivisionByZeroError,
    EvaluationError,
    NotANumberError,
    TypeMismatchError,
    UnknownOutputNameError,
)
from flowrunner.automation.operators import apply, run_sub_operations
from flowrunner.automation.schema import SubOperation


class OperatorEngineTests(unittest.TestCase):
    def test_arithmetic(self):
        self.assertEqual(apply("+", [2, 3]), 5)
        self.assertEqual(apply("-", [10, 3, 2]), 5)
        self.assertEqual(apply("*", ["4", 2.5]), 10.0)
        self.assertEqual(apply("/", [10, 4]), 2.5)
        self.assertEqual(apply("/", [10, 5]), 2)
        self.assertIsInstance(apply("/", [10, 5]), int)
        self.assertEqual(apply("%", [10, 3]), 1)
        self.assertEqual(apply("^", [2, 10]), 1024)

    def test_division_by_zero(self):
        with self.assertRaises(DivisionByZeroError):
            apply("/", [10, 0])
        with self.assertRaises(DivisionByZeroError):
            apply("%", [10, 0])

    def test_power_must_stay_real_and_finite(self):
        with self.assertRaises(NotANumberError):
            apply("^", [-8, 0.5])
        with self.assertRaises(NotANumberError):
            apply("^", [10.0, 400])
        self.assertEqual(apply("^", [4, 0.5]), 2.0)

    def test_non_numeric_operand(self):
        with self.assertRaises(NotANumberError) as ctx:
            apply("+", [1, "abc"])
        self.assertEqual(ctx.exception.error_type, "NotANumber")

    def test_concat_and_merge(self):
        self.assertEqual(apply("concat", ["a", "b"]), "ab")
        self.assertEqual(apply("concat", ["n=", 3, None, True]), "n=3true")
        self.assertEqual(apply("merge", [{"a": 1}, '{"b": 2}', {"a": 3}]), {"a": 3, "b": 2})
        with self.assertRaises(TypeMismatchError):
            apply("merge", [{"a": 1}, [1, 2]])

    def test_logic(self):
        self.assertIs(apply("AND", [True, False]), False)
        self.assertIs(apply("OR", [False, "true"]), True)
        self.assertIs(apply("XOR", [True, True, True]), True)
        self.assertIs(apply("NOT", [False]), True)

    def test_not_arity(self):
        with self.assertRaises(ArityError):
            apply("NOT", [True, False])

    def test_comparison_operators_delegate_to_evaluator(self):
        self.assertIs(apply(">", [5, 3]), True)
        self.assertIs(apply("contains", ["abc", "b"]), True)
        self.assertIs(apply("exists", [None]), False)
        with self.assertRaises(ArityError):
            apply("==", [1])

    def test_unknown_operator(self):
        with self.assertRaises(EvaluationError):
            apply("sqrt", [4])


class SubOperationTests(unittest.TestCase):
    def test_later_sub_operations_read_earlier_results(self):
        subs = [
            SubOperation.model_validate(
                {
                    "operator": "+",
                    "outputName": "total",
                    "operands": [
                        {"source": "automation_input", "value": "price"},
                        {"source": "manual", "value": 5},
                    ],
                }
            ),
            SubOperation.model_validate(
                {
                    "operator": ">",
                    "outputName": "expensive",
                    "operands": [
                        {"source": "current_operation", "value": "total"},
                        {"source": "manual", "value": 100},
                    ],
                }
            ),
        ]
        ctx = ExecutionContext(automation_inputs={"price": 98})

        outputs, new_ctx = run_sub_operations(subs, ctx)

        self.assertEqual(outputs, {"total": 103, "expensive": True})
        self.assertEqual(dict(new_ctx.current_operation_outputs), outputs)
        self.assertEqual(dict(ctx.current_operation_outputs), {})

    def test_reading_a_result_before_it_exists_fails(self):
        subs = [
            SubOperation(
                operator="NOT",
                output_name="flag",
                operands=[{"source": "current_operation", "value": "later"}],
            )
        ]
        with self.assertRaises(UnknownOutputNameError):
            run_sub_operations(subs, ExecutionContext())

    def test_duplicate_output_names_are_rejected(self):
        subs = [
            SubOperation(operator="+", output_name="x", operands=[{"value": 1}]),
            SubOperation(operator="+", output_name="x", operands=[{"value": 2}]),
        ]
        with self.assertRaises(EvaluationError):
            run_sub_operations(subs, ExecutionContext())


if __name__ == "__main__":
    unittest.main()
