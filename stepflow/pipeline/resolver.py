"""
VariableResolver - Expands ${...} references in step inputs.

Supported references:
  - ${variables.name}            -> pipeline variable (dotted paths allowed)
  - ${steps.step_name.output}    -> full output of a completed step
  - ${steps.step_name.output.a.b} -> nested field of that output

A string made of exactly one reference resolves to the referenced value with
its type preserved. References embedded in longer text are interpolated:
strings as-is, everything else JSON-encoded.
"""

import copy
import json
import logging
import re
from typing import Any, List

from stepflow.pipeline.models import ResolutionContext, StepStatus
from stepflow.utils.exceptions import ResolutionError

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"\$\{([^}]+)\}")
_LIST_INDEX = re.compile(r"[0-9]+")

_MISSING = object()


class VariableResolver:
    """Resolves placeholders against a ResolutionContext. Read-only."""

    def resolve(self, value: Any, context: ResolutionContext) -> Any:
        """
        Return a copy of ``value`` with every reference substituted.

        Args:
            value: Input payload (str, dict, list or scalar, possibly nested)
            context: Variables and settled step results

        Raises:
            ResolutionError: A reference cannot be resolved
        """
        if isinstance(value, str):
            return self._resolve_string(value, context)

        if isinstance(value, dict):
            return {key: self.resolve(item, context) for key, item in value.items()}

        if isinstance(value, (list, tuple)):
            return [self.resolve(item, context) for item in value]

        return value

    def _resolve_string(self, text: str, context: ResolutionContext) -> Any:
        full = _REFERENCE.fullmatch(text)
        if full:
            return copy.deepcopy(self.resolve_expression(full.group(1), context))

        def substitute(match):
            resolved = self.resolve_expression(match.group(1), context)
            if isinstance(resolved, str):
                return resolved
            return json.dumps(resolved, default=str)

        return _REFERENCE.sub(substitute, text)

    def resolve_expression(self, expression: str, context: ResolutionContext) -> Any:
        """
        Resolve one dotted expression (the text between ``${`` and ``}``).

        Raises:
            ResolutionError: Unknown root, variable, step, property or field
        """
        parts = [part.strip() for part in expression.strip().split(".")]
        root = parts[0]

        if root == "variables":
            if len(parts) < 2 or not parts[1]:
                raise ResolutionError(f"Variable name missing in ${{{expression}}}", expression=expression)
            name = parts[1]
            if not context.has_variable(name):
                raise ResolutionError(f"Unknown variable \"{name}\" in ${{{expression}}}", expression=expression)
            value = _walk(context.variables[name], parts[2:])
            if value is _MISSING:
                raise ResolutionError(
                    f"Field \"{'.'.join(parts[2:])}\" not found in variable \"{name}\"",
                    expression=expression,
                )
            return value

        if root == "steps":
            if len(parts) < 3:
                raise ResolutionError(
                    f"Step reference must be ${{steps.<name>.output...}}, got ${{{expression}}}",
                    expression=expression,
                )
            step_name, prop = parts[1], parts[2]
            result = context.get_result(step_name)
            if result is None:
                raise ResolutionError(f"Step \"{step_name}\" has no result yet", expression=expression)
            if result.status is not StepStatus.COMPLETED:
                raise ResolutionError(
                    f"Step \"{step_name}\" did not complete successfully ({result.status.value})",
                    expression=expression,
                )
            if prop != "output":
                raise ResolutionError(f"Unknown step property \"{prop}\" in ${{{expression}}}", expression=expression)
            value = _walk(result.output, parts[3:])
            if value is _MISSING:
                raise ResolutionError(
                    f"Field \"{'.'.join(parts[3:])}\" not found in output of step \"{step_name}\"",
                    expression=expression,
                )
            return value

        raise ResolutionError(f"Unknown reference root \"{root}\" in ${{{expression}}}", expression=expression)


def _walk(value: Any, path: List[str]) -> Any:
    """Follow a field path through dicts and lists; _MISSING when absent."""
    current = value
    for key in path:
        if isinstance(current, dict):
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and _LIST_INDEX.fullmatch(key):
            index = int(key)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def get_field(value: Any, field_path: str, default: Any = None) -> Any:
    """Dotted-path lookup that returns ``default`` instead of raising."""
    path = [part for part in field_path.split(".") if part] if field_path else []
    found = _walk(value, path)
    return default if found is _MISSING else found


def resolve_variables(value: Any, context: ResolutionContext) -> Any:
    """Module-level shortcut for VariableResolver().resolve()."""
    return VariableResolver().resolve(value, context)
