"""
ParallelGroupRunner - Fans a group of sibling steps out to threads and
collects every result before returning.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from stepflow.pipeline.models import ParallelGroup, ResolutionContext, StepResult, StepStatus
from stepflow.pipeline.step_runner import CapabilityInvoker, StepRunner

logger = logging.getLogger(__name__)


class ParallelGroupRunner:
    """
    Runs siblings concurrently against one shared, read-only snapshot.

    Siblings never see each other's results. The call blocks until every
    sibling has settled, so a group always yields one result per sibling,
    in declaration order.
    """

    def __init__(self, step_runner: StepRunner = None, max_workers: Optional[int] = None):
        self.step_runner = step_runner or StepRunner()
        self.max_workers = max_workers

    def run(
        self,
        group: ParallelGroup,
        snapshot: ResolutionContext,
        invoker: CapabilityInvoker,
        pipeline_id: str,
        pipeline_name: str,
        default_timeout_ms: int,
    ) -> List[StepResult]:
        """
        Execute every sibling of ``group``.

        Args:
            group: Parallel group definition
            snapshot: Context copy taken at group start
            invoker: Caller-supplied capability
            pipeline_id: Run identifier
            pipeline_name: Pipeline name
            default_timeout_ms: Fallback step timeout

        Returns:
            One StepResult per sibling, in declaration order
        """
        workers = len(group.steps)
        if self.max_workers:
            workers = min(workers, self.max_workers)

        logger.info(f"Parallel group {group.name}: {len(group.steps)} steps on {workers} workers")

        with ThreadPoolExecutor(max_workers=max(workers, 1), thread_name_prefix=f"group-{group.name}") as executor:
            futures = [
                executor.submit(
                    self.step_runner.run,
                    step,
                    snapshot,
                    invoker,
                    pipeline_id,
                    pipeline_name,
                    default_timeout_ms,
                )
                for step in group.steps
            ]

            results = []
            for step, future in zip(group.steps, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    # StepRunner records step problems itself; this is a bug guard
                    logger.exception(f"Parallel step {step.name} crashed")
                    results.append(StepResult(
                        step_name=step.name,
                        status=StepStatus.FAILED,
                        agent=step.agent,
                        skill=step.skill,
                        error=f"{type(e).__name__}: {e}",
                    ))

        failed = [r.step_name for r in results if r.is_failure]
        if failed:
            logger.warning(f"Parallel group {group.name}: {len(failed)}/{len(results)} steps failed: {failed}")
        return results


def group_status(results: List[StepResult]) -> StepStatus:
    """Failed if any sibling failed or timed out, else completed."""
    if any(r.is_failure for r in results):
        return StepStatus.FAILED
    return StepStatus.COMPLETED
