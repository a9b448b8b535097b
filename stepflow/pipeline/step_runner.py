"""
StepRunner - Executes a single sequential step.

Lifecycle of one step:
1. Resolve ${...} references in the input
2. Validate the resolved input (if an input schema is declared)
3. Invoke the capability, racing it against the step timeout
4. Classify the outcome (completed / failed / timeout)
5. Validate the output (if an output schema is declared)

Step-level problems never raise; they are recorded on the StepResult.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Union

from stepflow.pipeline.models import (
    CapabilityRequest,
    CapabilityResponse,
    ResolutionContext,
    SequentialStep,
    StepResult,
    StepStatus,
)
from stepflow.pipeline.resolver import VariableResolver
from stepflow.pipeline.schema_validator import SchemaValidator
from stepflow.utils.exceptions import (
    InvocationError,
    ResolutionError,
    SchemaValidationError,
    StepTimeoutError,
)

logger = logging.getLogger(__name__)

CapabilityInvoker = Callable[[CapabilityRequest], Union[CapabilityResponse, Any]]


class StepRunner:
    """Runs one step's full lifecycle against a read-only context."""

    def __init__(self, resolver: VariableResolver = None, validator: SchemaValidator = None):
        self.resolver = resolver or VariableResolver()
        self.validator = validator or SchemaValidator()

    def run(
        self,
        step: SequentialStep,
        context: ResolutionContext,
        invoker: CapabilityInvoker,
        pipeline_id: str,
        pipeline_name: str,
        default_timeout_ms: int,
    ) -> StepResult:
        """
        Execute a step and return its result.

        Args:
            step: Step definition
            context: Context to resolve references against (not mutated)
            invoker: Caller-supplied capability
            pipeline_id: Run identifier passed to the capability
            pipeline_name: Pipeline name passed to the capability
            default_timeout_ms: Used when the step declares no timeout

        Returns:
            StepResult with status completed, failed or timeout
        """
        invocation_id = str(uuid.uuid4())
        timeout_ms = step.timeout_ms or default_timeout_ms
        start = time.monotonic()

        def elapsed_ms() -> float:
            return (time.monotonic() - start) * 1000

        def failure(status: StepStatus, error: Exception, cost_usd: float = 0.0, **extra) -> StepResult:
            return StepResult(
                step_name=step.name,
                status=status,
                output=None,
                cost_usd=cost_usd,
                duration_ms=elapsed_ms(),
                invocation_id=invocation_id,
                agent=step.agent,
                skill=step.skill,
                error=str(error),
                **extra
            )

        try:
            resolved_input = self.resolver.resolve(step.input, context)
        except ResolutionError as e:
            e.step_name = step.name
            logger.error(f"Step {step.name}: input resolution failed: {e}")
            return failure(StepStatus.FAILED, e)

        is_valid, errors = self.validator.validate_step_input(step.name, resolved_input, step.input_schema)
        if not is_valid:
            return failure(StepStatus.FAILED, SchemaValidationError("; ".join(errors), errors, step.name))

        request = CapabilityRequest(
            step_name=step.name,
            skill=step.skill,
            agent=step.agent,
            input=resolved_input,
            timeout_ms=timeout_ms,
            pipeline_id=pipeline_id,
            pipeline_name=pipeline_name,
        )

        logger.info(f"Step {step.name}: invoking {step.skill or step.agent} (timeout {timeout_ms}ms)")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"step-{step.name}")
        try:
            future = executor.submit(invoker, request)
            try:
                raw = future.result(timeout=timeout_ms / 1000)
            except FutureTimeoutError:
                error = StepTimeoutError(
                    f"Step \"{step.name}\" timed out after {timeout_ms}ms",
                    timeout_ms=timeout_ms,
                    step_name=step.name,
                )
                logger.error(str(error))
                return failure(StepStatus.TIMEOUT, error)
            except Exception as e:
                error = InvocationError(str(e) or type(e).__name__, step_name=step.name)
                logger.error(f"Step {step.name} failed: {error}")
                return failure(StepStatus.FAILED, error)
        finally:
            # A timed-out call keeps its thread; its late result is discarded
            executor.shutdown(wait=False)

        try:
            response = CapabilityResponse.coerce(raw)
        except TypeError as e:
            logger.error(f"Step {step.name}: {e}")
            return failure(StepStatus.FAILED, InvocationError(str(e), step_name=step.name))

        cost_usd = float(response.estimated_cost_usd or 0.0)
        usage = dict(
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            thinking_tokens=response.thinking_tokens,
        )

        is_valid, errors = self.validator.validate_step_output(step.name, response.output, step.output_schema)
        if not is_valid:
            # The capability ran, so its reported cost still counts
            return failure(
                StepStatus.FAILED,
                SchemaValidationError("; ".join(errors), errors, step.name),
                cost_usd=cost_usd,
                **usage
            )

        result = StepResult(
            step_name=step.name,
            status=StepStatus.COMPLETED,
            output=response.output,
            cost_usd=cost_usd,
            duration_ms=elapsed_ms(),
            invocation_id=invocation_id,
            agent=step.agent,
            skill=step.skill,
            **usage
        )
        logger.info(f"Step {step.name} completed: {result.duration_ms:.0f}ms, ${cost_usd:.4f}")
        return result
