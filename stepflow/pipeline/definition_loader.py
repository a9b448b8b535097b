"""
Definition loader - Builds PipelineDefinition objects from YAML.

Example document:

    name: research-and-summarize
    variables:
      topic: solar storage
    steps:
      - name: research
        skill: web-research
        timeout: 60000
        input:
          query: ${variables.topic}
      - name: review
        parallel:
          - name: fact_check
            agent: checker
            input: {text: "${steps.research.output.summary}"}
          - name: tone_check
            agent: editor
            input: {text: "${steps.research.output.summary}"}

Every structural problem is collected and reported in one ConfigurationError.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from stepflow.pipeline.models import (
    Condition,
    ConditionOperator,
    ParallelGroup,
    PipelineDefinition,
    SequentialStep,
)
from stepflow.pipeline.pipeline_engine import validate_definition
from stepflow.pipeline.schema_validator import SchemaValidator
from stepflow.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_schema_validator = SchemaValidator()


def load_definition(path: str) -> PipelineDefinition:
    """
    Load and validate a pipeline definition from a YAML file.

    Raises:
        FileNotFoundError: File does not exist
        ConfigurationError: Document is not a valid pipeline
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pipeline definition not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        text = f.read()

    definition = parse_definition(text)
    logger.info(f"Loaded pipeline {definition.name} from {path} ({definition.count_steps()} steps)")
    return definition


def parse_definition(text: str) -> PipelineDefinition:
    """Parse a YAML (or JSON) string into a validated PipelineDefinition."""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML parse error: {e}", errors=[f"YAML parse error: {e}"]) from e
    return build_definition(raw)


def build_definition(raw: Any) -> PipelineDefinition:
    """
    Validate an already-parsed mapping and transform it into a definition.

    Raises:
        ConfigurationError: With every problem found
    """
    errors: List[str] = []

    if not isinstance(raw, dict):
        raise ConfigurationError("Pipeline definition must be an object",
                                 errors=["Pipeline definition must be an object"])

    name = raw.get('name')
    if not name or not isinstance(name, str):
        errors.append('Pipeline "name" is required and must be a string')

    description = raw.get('description')
    if description is not None and not isinstance(description, str):
        errors.append('"description" must be a string if provided')

    variables = raw.get('variables') or {}
    if not isinstance(variables, dict):
        errors.append('"variables" must be an object')
        variables = {}

    raw_steps = raw.get('steps')
    if not isinstance(raw_steps, list) or not raw_steps:
        errors.append('"steps" is required and must be a non-empty array')
        raise ConfigurationError("; ".join(errors), errors=errors)

    steps = []
    for index, raw_step in enumerate(raw_steps):
        prefix = f"Step {index}"
        if not isinstance(raw_step, dict):
            errors.append(f"{prefix}: must be an object")
            continue
        if not raw_step.get('name') or not isinstance(raw_step.get('name'), str):
            errors.append(f'{prefix}: "name" is required and must be a string')
            continue

        prefix = f'{prefix} ("{raw_step["name"]}")'
        if 'parallel' in raw_step:
            group, group_errors = _parse_parallel_group(raw_step, prefix)
            errors.extend(group_errors)
            if group is not None:
                steps.append(group)
        else:
            step, step_errors = _parse_sequential_step(raw_step, prefix)
            errors.extend(step_errors)
            if step is not None:
                steps.append(step)

    if errors:
        raise ConfigurationError("; ".join(errors), errors=errors)

    definition = PipelineDefinition(
        name=name,
        description=description,
        variables=dict(variables),
        steps=steps,
    )
    # Cross-step checks (duplicates, goto targets) live with the engine
    validate_definition(definition)
    return definition


def _parse_sequential_step(raw: Dict[str, Any], prefix: str) -> Tuple[Optional[SequentialStep], List[str]]:
    errors = []

    skill = raw.get('skill')
    agent = raw.get('agent')
    if not skill and not agent:
        errors.append(f'{prefix}: must have either "skill" or "agent"')
    if skill is not None and not isinstance(skill, str):
        errors.append(f'{prefix}: "skill" must be a string')
    if agent is not None and not isinstance(agent, str):
        errors.append(f'{prefix}: "agent" must be a string')

    step_input = raw.get('input', {})
    if step_input is None:
        step_input = {}
    if not isinstance(step_input, dict):
        errors.append(f'{prefix}: "input" must be an object')

    timeout = raw.get('timeout', raw.get('timeout_ms'))
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        errors.append(f'{prefix}: "timeout" must be a positive number (ms)')

    input_schema = _first_present(raw, 'input_schema', 'inputSchema')
    if input_schema is not None:
        errors.extend(_schema_validator.check_schema(input_schema, f"{prefix}.input_schema"))

    output_schema = _first_present(raw, 'output_schema', 'outputSchema')
    if output_schema is not None:
        errors.extend(_schema_validator.check_schema(output_schema, f"{prefix}.output_schema"))

    condition = None
    if raw.get('condition') is not None:
        condition, condition_errors = _parse_condition(raw['condition'], prefix)
        errors.extend(condition_errors)

    if errors:
        return None, errors

    return SequentialStep(
        name=raw['name'],
        skill=skill,
        agent=agent,
        input=step_input,
        input_schema=input_schema,
        output_schema=output_schema,
        timeout_ms=timeout,
        condition=condition,
    ), []


def _parse_parallel_group(raw: Dict[str, Any], prefix: str) -> Tuple[Optional[ParallelGroup], List[str]]:
    errors = []
    raw_steps = raw.get('parallel')

    if not isinstance(raw_steps, list) or not raw_steps:
        return None, [f'{prefix}: "parallel" must be a non-empty array of steps']

    steps = []
    for index, raw_step in enumerate(raw_steps):
        sub_prefix = f"{prefix}.parallel[{index}]"
        if not isinstance(raw_step, dict):
            errors.append(f"{sub_prefix}: must be an object")
            continue
        if not raw_step.get('name') or not isinstance(raw_step.get('name'), str):
            errors.append(f'{sub_prefix}: "name" is required')
            continue
        step, step_errors = _parse_sequential_step(raw_step, sub_prefix)
        errors.extend(step_errors)
        if step is not None:
            steps.append(step)

    if errors:
        return None, errors
    return ParallelGroup(name=raw['name'], steps=steps), []


def _parse_condition(raw: Any, prefix: str) -> Tuple[Optional[Condition], List[str]]:
    if not isinstance(raw, dict):
        return None, [f'{prefix}: "condition" must be an object']

    errors = []
    for key in ('step', 'field', 'goto'):
        if not raw.get(key) or not isinstance(raw.get(key), str):
            errors.append(f'{prefix}: condition "{key}" is required')

    operator = None
    try:
        operator = ConditionOperator.parse(raw.get('operator'))
    except ValueError:
        valid = ", ".join(op.value for op in ConditionOperator)
        errors.append(f'{prefix}: condition "operator" must be one of: {valid}')

    if 'value' not in raw:
        errors.append(f'{prefix}: condition "value" is required')

    if errors:
        return None, errors

    return Condition(
        step=raw['step'],
        field=raw['field'],
        operator=operator,
        value=raw['value'],
        goto=raw['goto'],
    ), []


def _first_present(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None
