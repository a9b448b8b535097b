"""Pipeline execution engine for orchestrating capability steps."""
from .models import (
    CapabilityRequest,
    CapabilityResponse,
    Condition,
    ConditionOperator,
    ExecutionOptions,
    ParallelGroup,
    PipelineDefinition,
    PipelineResult,
    PipelineStatus,
    ResolutionContext,
    SequentialStep,
    StepKind,
    StepResult,
    StepStatus,
)
from .pipeline_engine import PipelineEngine, execute, validate_definition
from .definition_loader import build_definition, load_definition, parse_definition
from .state_machine import StateMachine

__all__ = [
    'CapabilityRequest',
    'CapabilityResponse',
    'Condition',
    'ConditionOperator',
    'ExecutionOptions',
    'ParallelGroup',
    'PipelineDefinition',
    'PipelineEngine',
    'PipelineResult',
    'PipelineStatus',
    'ResolutionContext',
    'SequentialStep',
    'StateMachine',
    'StepKind',
    'StepResult',
    'StepStatus',
    'build_definition',
    'execute',
    'load_definition',
    'parse_definition',
    'validate_definition',
]
