"""stepflow - deterministic step orchestration for skill and agent pipelines."""
from stepflow.pipeline import (
    ExecutionOptions,
    PipelineDefinition,
    PipelineEngine,
    PipelineResult,
    execute,
    load_definition,
)

__version__ = "0.1.0"

__all__ = [
    'ExecutionOptions',
    'PipelineDefinition',
    'PipelineEngine',
    'PipelineResult',
    'execute',
    'load_definition',
]
