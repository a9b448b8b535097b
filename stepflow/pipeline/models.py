"""
Data model for pipeline definitions, execution context and results.

Definitions are built once (by the definition loader or by hand) and treated
as immutable input. A ResolutionContext is created per run. StepResult and
PipelineResult are write-once outputs handed back to the caller.
"""

import copy
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd


class StepKind(Enum):
    """Discriminator for the two step variants."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ConditionOperator(Enum):
    """Comparison operators usable in a branch condition."""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"

    @classmethod
    def parse(cls, value: Union[str, "ConditionOperator"]) -> "ConditionOperator":
        """Parse an operator from its short, long or symbolic spelling."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_")
        try:
            return cls(_OPERATOR_ALIASES.get(key, key))
        except ValueError:
            raise ValueError(f"Unknown condition operator: {value!r}") from None


_OPERATOR_ALIASES = {
    "equals": "eq",
    "==": "eq",
    "not_equals": "neq",
    "!=": "neq",
    "greater_than": "gt",
    ">": "gt",
    "less_than": "lt",
    "<": "lt",
    "greater_or_equal": "gte",
    ">=": "gte",
    "less_or_equal": "lte",
    "<=": "lte",
}


class StepStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class PipelineStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


# ─── Definition ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Condition:
    """
    Branch rule attached to a sequential step.

    After the owning step settles, the field at ``field`` (dotted path) in the
    output of ``step`` is compared with ``value``; when true the engine jumps
    to ``goto``.
    """
    step: str
    field: str
    operator: ConditionOperator
    value: Any
    goto: str


@dataclass(frozen=True)
class SequentialStep:
    """One capability invocation."""
    name: str
    skill: Optional[str] = None
    agent: Optional[str] = None
    input: Dict[str, Any] = field(default_factory=dict)
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    timeout_ms: Optional[int] = None
    condition: Optional[Condition] = None
    kind: StepKind = field(default=StepKind.SEQUENTIAL, init=False)


@dataclass(frozen=True)
class ParallelGroup:
    """Sibling steps executed concurrently as one unit."""
    name: str
    steps: Tuple[SequentialStep, ...] = ()
    kind: StepKind = field(default=StepKind.PARALLEL, init=False)

    def __post_init__(self):
        # Accept any iterable of steps but store a tuple
        object.__setattr__(self, "steps", tuple(self.steps))


StepDef = Union[SequentialStep, ParallelGroup]


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    steps: Tuple[StepDef, ...] = ()
    variables: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))

    def iter_sequential_steps(self):
        """Yield every sequential step, descending into parallel groups."""
        for entry in self.steps:
            if entry.kind is StepKind.PARALLEL:
                yield from entry.steps
            else:
                yield entry

    def step_names(self) -> List[str]:
        """All addressable names: entries and parallel siblings."""
        names = []
        for entry in self.steps:
            names.append(entry.name)
            if entry.kind is StepKind.PARALLEL:
                names.extend(sub.name for sub in entry.steps)
        return names

    def count_steps(self) -> int:
        """Count executable steps (parallel siblings count individually)."""
        return sum(1 for _ in self.iter_sequential_steps())


# ─── Capability contract ─────────────────────────────────────────────────


@dataclass(frozen=True)
class CapabilityRequest:
    """What the engine hands to the capability invoker for one step."""
    step_name: str
    skill: Optional[str]
    agent: Optional[str]
    input: Any
    timeout_ms: int
    pipeline_id: str
    pipeline_name: str


@dataclass
class CapabilityResponse:
    """What a capability invoker returns for one step."""
    output: Any = None
    model: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    thinking_tokens: Optional[int] = None
    estimated_cost_usd: Optional[float] = None

    _CAMEL_KEYS = {
        "inputTokens": "input_tokens",
        "outputTokens": "output_tokens",
        "thinkingTokens": "thinking_tokens",
        "estimatedCostUsd": "estimated_cost_usd",
    }

    @classmethod
    def coerce(cls, value: Any) -> "CapabilityResponse":
        """
        Normalize an invoker return value.

        Accepts a CapabilityResponse or a mapping with the same keys
        (snake_case or camelCase). Anything else is a contract violation.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            kwargs = {}
            for key, item in value.items():
                key = cls._CAMEL_KEYS.get(key, key)
                if key in ("output", "model", "input_tokens", "output_tokens",
                           "thinking_tokens", "estimated_cost_usd"):
                    kwargs[key] = item
            return cls(**kwargs)
        raise TypeError(
            f"Capability must return CapabilityResponse or a mapping, got {type(value).__name__}"
        )

    @property
    def total_tokens(self) -> int:
        return (self.input_tokens or 0) + (self.output_tokens or 0) + (self.thinking_tokens or 0)


# ─── Results ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step execution (or of a step that never started)."""
    step_name: str
    status: StepStatus
    output: Any = None
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    invocation_id: Optional[str] = None
    agent: Optional[str] = None
    skill: Optional[str] = None
    model: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    thinking_tokens: Optional[int] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None

    @classmethod
    def skipped(cls, step: SequentialStep, reason: str) -> "StepResult":
        return cls(
            step_name=step.name,
            status=StepStatus.SKIPPED,
            agent=step.agent,
            skill=step.skill,
            skip_reason=reason,
        )

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.COMPLETED

    @property
    def is_failure(self) -> bool:
        """Failed or timed out (skips are not failures)."""
        return self.status in (StepStatus.FAILED, StepStatus.TIMEOUT)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class PipelineResult:
    pipeline_id: str
    name: str
    status: PipelineStatus
    steps: List[StepResult] = field(default_factory=list)
    total_cost_usd: float = 0.0
    total_duration_ms: float = 0.0
    variables: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is PipelineStatus.COMPLETED

    @property
    def failed_steps(self) -> List[StepResult]:
        return [s for s in self.steps if s.is_failure]

    def get_step(self, name: str) -> Optional[StepResult]:
        """Latest recorded result for a step name."""
        for result in reversed(self.steps):
            if result.step_name == name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "total_cost_usd": self.total_cost_usd,
            "total_duration_ms": self.total_duration_ms,
            "variables": self.variables,
            "error": self.error,
        }

    def to_dataframe(self) -> pd.DataFrame:
        """One row per recorded step result, in audit order."""
        columns = ["step_name", "status", "cost_usd", "duration_ms", "model",
                   "input_tokens", "output_tokens", "thinking_tokens", "error", "skip_reason"]
        rows = []
        for result in self.steps:
            row = result.to_dict()
            rows.append({col: row[col] for col in columns})
        return pd.DataFrame(rows, columns=columns)


# ─── Execution state ─────────────────────────────────────────────────────


@dataclass
class ResolutionContext:
    """
    Variables plus settled step results, keyed by step name.

    The step map keeps insertion order; re-executing a step (after a backward
    goto) replaces its entry in place.
    """
    variables: Dict[str, Any] = field(default_factory=dict)
    steps: Dict[str, StepResult] = field(default_factory=dict)

    def record(self, result: StepResult) -> None:
        self.steps[result.step_name] = result

    def get_result(self, name: str) -> Optional[StepResult]:
        return self.steps.get(name)

    def has_variable(self, name: str) -> bool:
        return name in self.variables

    def snapshot(self) -> "ResolutionContext":
        """Copy that a parallel group can read while the engine waits."""
        return ResolutionContext(
            variables=copy.deepcopy(self.variables),
            steps=dict(self.steps),
        )


@dataclass
class ExecutionOptions:
    """Per-run knobs for PipelineEngine.execute()."""
    variables: Dict[str, Any] = field(default_factory=dict)
    default_timeout_ms: int = 30000
    max_total_cost_usd: Optional[float] = None
    max_step_visits: int = 100
    max_parallel_workers: Optional[int] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any], **overrides) -> "ExecutionOptions":
        """Build options from the ``engine`` section of config.yaml."""
        engine_config = (config or {}).get("engine") or {}
        kwargs = {
            "default_timeout_ms": engine_config.get("default_timeout_ms", 30000),
            "max_total_cost_usd": engine_config.get("max_total_cost_usd"),
            "max_step_visits": engine_config.get("max_step_visits", 100),
            "max_parallel_workers": engine_config.get("max_parallel_workers"),
        }
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)
