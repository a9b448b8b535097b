"""
Unit tests for ParallelGroupRunner
Tests isolation, full collection and concurrency of sibling steps
"""

import threading
import unittest

from stepflow.pipeline.models import (
    CapabilityResponse,
    ParallelGroup,
    ResolutionContext,
    SequentialStep,
    StepResult,
    StepStatus,
)
from stepflow.pipeline.parallel import ParallelGroupRunner, group_status


class TestParallelGroupRunner(unittest.TestCase):
    """Test suite for ParallelGroupRunner"""

    def setUp(self):
        """Set up test fixtures"""
        self.runner = ParallelGroupRunner()
        self.snapshot = ResolutionContext(
            variables={"text": "hello"},
            steps={"draft": StepResult(step_name="draft", status=StepStatus.COMPLETED, output={"body": "B"})},
        )

    def run_group(self, group, invoker):
        return self.runner.run(group, self.snapshot, invoker, "pid", "demo", 1000)

    def test_yields_one_result_per_sibling_in_order(self):
        def invoker(request):
            if request.step_name == "b":
                raise ValueError("bad input")
            if request.step_name == "c":
                threading.Event().wait(1)
            return CapabilityResponse(output=request.step_name.upper(), estimated_cost_usd=0.01)

        group = ParallelGroup(name="g", steps=[
            SequentialStep(name="a", agent="x"),
            SequentialStep(name="b", agent="x"),
            SequentialStep(name="c", agent="x", timeout_ms=50),
            SequentialStep(name="d", agent="x"),
        ])
        results = self.run_group(group, invoker)

        self.assertEqual([r.step_name for r in results], ["a", "b", "c", "d"])
        self.assertEqual(
            [r.status for r in results],
            [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.TIMEOUT, StepStatus.COMPLETED],
        )
        self.assertEqual(results[0].output, "A")
        self.assertEqual(results[3].output, "D")
        self.assertEqual(group_status(results), StepStatus.FAILED)

    def test_siblings_run_concurrently(self):
        """Each sibling waits for the others; only works if they overlap"""
        barrier = threading.Barrier(3, timeout=2)

        def invoker(request):
            barrier.wait()
            return CapabilityResponse(output="ok")

        group = ParallelGroup(name="g", steps=[SequentialStep(name=n, agent="x") for n in ("a", "b", "c")])
        results = self.run_group(group, invoker)
        self.assertTrue(all(r.status is StepStatus.COMPLETED for r in results))
        self.assertEqual(group_status(results), StepStatus.COMPLETED)

    def test_siblings_resolve_against_snapshot_only(self):
        """A sibling referencing another sibling fails: results are not shared"""
        def invoker(request):
            return CapabilityResponse(output={"value": request.input})

        group = ParallelGroup(name="g", steps=[
            SequentialStep(name="a", agent="x", input={"t": "${variables.text}", "d": "${steps.draft.output.body}"}),
            SequentialStep(name="b", agent="x", input={"from_a": "${steps.a.output.value}"}),
        ])
        results = self.run_group(group, invoker)

        self.assertEqual(results[0].status, StepStatus.COMPLETED)
        self.assertEqual(results[0].output, {"value": {"t": "hello", "d": "B"}})
        self.assertEqual(results[1].status, StepStatus.FAILED)
        self.assertNotIn("a", self.snapshot.steps)

    def test_worker_cap_still_runs_every_sibling(self):
        runner = ParallelGroupRunner(max_workers=1)
        group = ParallelGroup(name="g", steps=[SequentialStep(name=f"s{i}", agent="x") for i in range(5)])
        results = runner.run(group, self.snapshot, lambda r: {"output": r.step_name}, "pid", "demo", 1000)
        self.assertEqual([r.output for r in results], [f"s{i}" for i in range(5)])


if __name__ == '__main__':
    unittest.main()
