"""
PipelineEngine - Deterministic execution engine for step pipelines.

Walks a PipelineDefinition entry by entry:
- Sequential steps run one at a time; a failure halts the run
- Parallel groups fan out, join, and never halt the run on their own
- Conditions jump forward (skipping steps) or backward (re-entering them)
- A cost ceiling and a per-step visit cap stop scheduling early

Every step that was defined ends up in the audit trail, either with its
outcome or as skipped, so a run can be replayed from its result alone.
"""

import copy
import logging
import time
import uuid
from collections import defaultdict
from typing import Dict, List, Optional

from stepflow.monitoring.cost_tracker import CostTracker
from stepflow.monitoring.event_bus import EventBus, EventType
from stepflow.pipeline.conditions import ConditionEvaluator
from stepflow.pipeline.models import (
    ConditionOperator,
    ExecutionOptions,
    PipelineDefinition,
    PipelineResult,
    PipelineStatus,
    ResolutionContext,
    StepDef,
    StepKind,
    StepResult,
    StepStatus,
)
from stepflow.pipeline.parallel import ParallelGroupRunner, group_status
from stepflow.pipeline.state_machine import StateMachine
from stepflow.pipeline.step_runner import CapabilityInvoker, StepRunner
from stepflow.utils.exceptions import BudgetExceededError, ConfigurationError, LoopLimitError
from stepflow.utils.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class PipelineEngine:
    """
    Executes pipeline definitions against a caller-supplied capability.

    Key responsibilities:
    1. Validate the definition before anything runs
    2. Drive the instruction pointer over sequential steps and parallel groups
    3. Apply conditional jumps and mark bypassed steps as skipped
    4. Enforce the cost ceiling and the visit cap
    5. Manage run state (PENDING → RUNNING → COMPLETED/FAILED)
    6. Publish lifecycle events, record costs, write the audit log

    Event bus, cost tracker and audit logger are optional. Their failures are
    logged and never change the outcome of a run.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        cost_tracker: Optional[CostTracker] = None,
        audit_logger: Optional[StructuredLogger] = None,
        step_runner: Optional[StepRunner] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.event_bus = event_bus
        self.cost_tracker = cost_tracker
        self.audit_logger = audit_logger
        self.step_runner = step_runner or StepRunner()
        self.evaluator = evaluator or ConditionEvaluator()

    def execute(
        self,
        definition: PipelineDefinition,
        invoker: CapabilityInvoker,
        options: Optional[ExecutionOptions] = None,
    ) -> PipelineResult:
        """
        Run a pipeline to completion.

        Args:
            definition: Validated-or-not pipeline definition (validated here)
            invoker: Callable producing each step's output
            options: Variable overrides, default timeout, cost ceiling, caps

        Returns:
            PipelineResult with one StepResult per executed or skipped step

        Raises:
            ConfigurationError: The definition is invalid; nothing was run
        """
        validate_definition(definition)
        options = options or ExecutionOptions()

        pipeline_id = str(uuid.uuid4())
        variables = copy.deepcopy(dict(definition.variables))
        variables.update(copy.deepcopy(dict(options.variables or {})))
        context = ResolutionContext(variables=variables)

        entries: List[StepDef] = list(definition.steps)
        positions = _entry_positions(entries)
        parallel_runner = ParallelGroupRunner(self.step_runner, options.max_parallel_workers)
        state_machine = StateMachine(definition.name)

        results: List[StepResult] = []
        visits: Dict[str, int] = defaultdict(int)
        total_cost = 0.0
        halt_reason: Optional[str] = None
        failed_groups: List[str] = []
        pointer = 0

        logger.info("=" * 80)
        logger.info(f"PIPELINE EXECUTION START: {definition.name} ({pipeline_id})")
        logger.info("=" * 80)

        pipeline_start = time.monotonic()
        state_machine.start()
        self._audit("log_pipeline_start", pipeline_id, definition.name, definition.count_steps(), variables)

        try:
            while pointer < len(entries):
                entry = entries[pointer]

                ceiling = options.max_total_cost_usd
                if ceiling is not None and total_cost > ceiling:
                    error = BudgetExceededError(
                        f"Cost ceiling ${ceiling:.4f} exceeded (spent ${total_cost:.4f}); "
                        f"\"{entry.name}\" and later steps not started",
                        ceiling_usd=ceiling,
                        spent_usd=total_cost,
                    )
                    logger.warning(str(error))
                    halt_reason = str(error)
                    self._skip_entries(pipeline_id, entries[pointer:], "cost ceiling exceeded", results)
                    break

                visits[entry.name] += 1
                if visits[entry.name] > options.max_step_visits:
                    error = LoopLimitError(
                        f"Step \"{entry.name}\" exceeded the visit limit of {options.max_step_visits}",
                        step_name=entry.name,
                        visits=visits[entry.name],
                    )
                    logger.error(str(error))
                    halt_reason = str(error)
                    self._skip_entries(pipeline_id, entries[pointer:], "visit limit exceeded", results)
                    break

                logger.info("-" * 80)
                logger.info(f"ENTRY {pointer + 1}/{len(entries)}: {entry.name} ({entry.kind.value})")

                if entry.kind is StepKind.PARALLEL:
                    for sibling in entry.steps:
                        self._audit("log_step_start", pipeline_id, sibling.name, sibling.input,
                                    skill=sibling.skill, agent=sibling.agent, group=entry.name)

                    group_results = parallel_runner.run(
                        entry,
                        context.snapshot(),
                        invoker,
                        pipeline_id,
                        definition.name,
                        options.default_timeout_ms,
                    )
                    for result in group_results:
                        context.record(result)
                        results.append(result)
                        total_cost += result.cost_usd
                        self._after_step(pipeline_id, definition.name, result)

                    if group_status(group_results) is StepStatus.FAILED:
                        failed_groups.append(entry.name)
                    pointer += 1

                elif entry.kind is StepKind.SEQUENTIAL:
                    self._audit("log_step_start", pipeline_id, entry.name, entry.input,
                                skill=entry.skill, agent=entry.agent, visit=visits[entry.name])

                    result = self.step_runner.run(
                        entry,
                        context,
                        invoker,
                        pipeline_id,
                        definition.name,
                        options.default_timeout_ms,
                    )
                    context.record(result)
                    results.append(result)
                    total_cost += result.cost_usd
                    self._after_step(pipeline_id, definition.name, result)

                    if result.is_failure:
                        halt_reason = f"Step \"{entry.name}\" {result.status.value}: {result.error}"
                        logger.error(f"Pipeline halted: {halt_reason}")
                        self._skip_entries(
                            pipeline_id,
                            entries[pointer + 1:],
                            f"halted after failure of \"{entry.name}\"",
                            results,
                        )
                        break

                    if entry.condition is not None:
                        try:
                            should_jump = self.evaluator.evaluate(entry.condition, context)
                        except ConfigurationError as e:
                            halt_reason = str(e)
                            logger.error(f"Pipeline halted: {halt_reason}")
                            self._skip_entries(
                                pipeline_id,
                                entries[pointer + 1:],
                                f"halted after failure of \"{entry.name}\"",
                                results,
                            )
                            break

                        if should_jump:
                            target = positions[entry.condition.goto]
                            logger.info(f"Condition on {entry.name} true: goto {entry.condition.goto}")
                            if target > pointer + 1:
                                self._skip_entries(
                                    pipeline_id,
                                    entries[pointer + 1:target],
                                    f"bypassed by condition on \"{entry.name}\"",
                                    results,
                                )
                            pointer = target
                            continue

                    pointer += 1

                else:
                    raise TypeError(f"Unknown step kind: {entry.kind!r}")

        except Exception as e:
            logger.error(f"Pipeline execution failed: {e}")
            state_machine.transition_to_failed(str(e))
            self._publish(EventType.PIPELINE_FAILED, {
                "pipeline_id": pipeline_id,
                "name": definition.name,
                "status": PipelineStatus.FAILED.value,
                "error": str(e),
                "total_cost_usd": total_cost,
            })
            raise

        if halt_reason is None and failed_groups:
            halt_reason = f"Parallel group(s) with failed steps: {', '.join(failed_groups)}"

        succeeded = halt_reason is None and not any(r.is_failure for r in results)
        status = PipelineStatus.COMPLETED if succeeded else PipelineStatus.FAILED
        if succeeded:
            state_machine.transition_to_completed()
        else:
            state_machine.transition_to_failed(halt_reason or "step failure")

        pipeline_result = PipelineResult(
            pipeline_id=pipeline_id,
            name=definition.name,
            status=status,
            steps=results,
            total_cost_usd=total_cost,
            total_duration_ms=(time.monotonic() - pipeline_start) * 1000,
            variables=copy.deepcopy(context.variables),
            error=None if succeeded else halt_reason,
        )

        self._finish(pipeline_result, definition.count_steps())

        logger.info("=" * 80)
        logger.info(
            f"PIPELINE EXECUTION END: {pipeline_result.total_duration_ms:.0f}ms, "
            f"${pipeline_result.total_cost_usd:.4f}"
        )
        logger.info(f"Final state: {state_machine.current_state}")
        logger.info("=" * 80)

        return pipeline_result

    def _skip_entries(self, pipeline_id: str, entries: List[StepDef], reason: str, results: List[StepResult]) -> None:
        """Record every step in ``entries`` (siblings included) as skipped."""
        for entry in entries:
            steps = entry.steps if entry.kind is StepKind.PARALLEL else (entry,)
            for step in steps:
                results.append(StepResult.skipped(step, reason))
                logger.info(f"Step {step.name} skipped: {reason}")
                self._audit("log_step_skipped", pipeline_id, step.name, reason)

    def _after_step(self, pipeline_id: str, pipeline_name: str, result: StepResult) -> None:
        """Side channels for an executed step: event, ledger, audit log."""
        payload = {
            "pipeline_id": pipeline_id,
            "name": pipeline_name,
            "step_name": result.step_name,
            "status": result.status.value,
            "cost_usd": result.cost_usd,
            "duration_ms": result.duration_ms,
            "invocation_id": result.invocation_id,
        }
        if result.error:
            payload["error"] = result.error
        self._publish(EventType.STEP_COMPLETED, payload)

        if self.cost_tracker is not None and (result.cost_usd > 0 or result.input_tokens):
            try:
                self.cost_tracker.record(pipeline_id, pipeline_name, result)
            except Exception as e:
                logger.error(f"Cost recording failed for {result.step_name}: {e}")

        if result.succeeded:
            self._audit("log_step_complete", pipeline_id, result.step_name, result.output,
                        cost_usd=result.cost_usd, duration_ms=result.duration_ms, model=result.model,
                        input_tokens=result.input_tokens, output_tokens=result.output_tokens)
        else:
            self._audit("log_step_error", pipeline_id, result.step_name, result.status.value,
                        result.error, duration_ms=result.duration_ms)

    def _finish(self, result: PipelineResult, total_steps: int) -> None:
        completed_steps = sum(1 for s in result.steps if s.succeeded)
        payload = {
            "pipeline_id": result.pipeline_id,
            "name": result.name,
            "status": result.status.value,
            "total_cost_usd": result.total_cost_usd,
            "completed_steps": completed_steps,
            "total_steps": total_steps,
        }
        if result.error:
            payload["error"] = result.error
        channel = EventType.PIPELINE_COMPLETED if result.succeeded else EventType.PIPELINE_FAILED
        self._publish(channel, payload)

        self._audit("log_pipeline_complete", result.pipeline_id, result.name, result.status.value,
                    result.total_cost_usd, result.total_duration_ms, result.error)

    def _publish(self, channel: EventType, payload: Dict) -> None:
        if self.event_bus is None:
            return
        try:
            self.event_bus.publish(channel, payload)
        except Exception as e:
            logger.error(f"Failed to publish {channel.value}: {e}")

    def _audit(self, method: str, *args, **kwargs) -> None:
        if self.audit_logger is None:
            return
        try:
            getattr(self.audit_logger, method)(*args, **kwargs)
        except Exception as e:
            logger.error(f"Audit log {method} failed: {e}")


def validate_definition(definition: PipelineDefinition) -> None:
    """
    Check a definition before execution.

    Raises:
        ConfigurationError: Listing every problem found
    """
    errors: List[str] = []

    if not definition.name or not str(definition.name).strip():
        errors.append('Pipeline "name" is required')
    if not definition.steps:
        errors.append('Pipeline must define at least one step')

    # Flattened order: a condition may only look at steps at or before its own
    order: Dict[str, int] = {}
    seen = set()
    for entry in definition.steps:
        kind = getattr(entry, "kind", None)
        if kind not in (StepKind.SEQUENTIAL, StepKind.PARALLEL):
            errors.append(f"Step {getattr(entry, 'name', entry)!r}: unknown step kind {kind!r}")
            continue

        names = [entry.name]
        if kind is StepKind.PARALLEL:
            names.extend(sub.name for sub in entry.steps)
        for name in names:
            if not name:
                errors.append("Every step needs a non-empty name")
            elif name in seen:
                errors.append(f'Duplicate step name "{name}"')
            seen.add(name)
            order.setdefault(name, len(order))

    for entry in definition.steps:
        kind = getattr(entry, "kind", None)
        if kind is StepKind.PARALLEL:
            if not entry.steps:
                errors.append(f'Parallel group "{entry.name}" has no steps')
            for sub in entry.steps:
                errors.extend(_validate_sequential(sub))
                if sub.condition is not None:
                    errors.append(
                        f'Step "{sub.name}" in parallel group "{entry.name}": '
                        f'conditions are only allowed on sequential steps'
                    )
        elif kind is StepKind.SEQUENTIAL:
            errors.extend(_validate_sequential(entry))
            if entry.condition is not None:
                errors.extend(_validate_condition(entry, order))

    if errors:
        raise ConfigurationError(
            f'Invalid pipeline "{definition.name}": ' + "; ".join(errors),
            errors=errors,
        )


def _validate_sequential(step) -> List[str]:
    errors = []
    if not step.skill and not step.agent:
        errors.append(f'Step "{step.name}": must have either "skill" or "agent"')
    if step.timeout_ms is not None:
        if isinstance(step.timeout_ms, bool) or not isinstance(step.timeout_ms, (int, float)) or step.timeout_ms <= 0:
            errors.append(f'Step "{step.name}": "timeout" must be a positive number (ms)')
    return errors


def _validate_condition(step, order: Dict[str, int]) -> List[str]:
    errors = []
    condition = step.condition
    try:
        ConditionOperator.parse(condition.operator)
    except ValueError as e:
        errors.append(f'Step "{step.name}": {e}')

    if condition.step not in order:
        errors.append(f'Step "{step.name}": condition references unknown step "{condition.step}"')
    elif order[condition.step] > order[step.name]:
        errors.append(
            f'Step "{step.name}": condition references step "{condition.step}" which runs later'
        )

    if condition.goto not in order:
        errors.append(f'Step "{step.name}": condition goto references unknown step "{condition.goto}"')
    return errors


def _entry_positions(entries: List[StepDef]) -> Dict[str, int]:
    """Map every addressable name to its entry index (siblings -> their group)."""
    positions = {}
    for index, entry in enumerate(entries):
        positions[entry.name] = index
        if entry.kind is StepKind.PARALLEL:
            for sub in entry.steps:
                positions[sub.name] = index
    return positions


def execute(
    definition: PipelineDefinition,
    invoker: CapabilityInvoker,
    options: Optional[ExecutionOptions] = None,
) -> PipelineResult:
    """Run a pipeline with a default engine (no events, ledger or audit log)."""
    return PipelineEngine().execute(definition, invoker, options)
