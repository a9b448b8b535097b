"""
SchemaValidator - Validates step inputs and outputs against inline schemas.

Supports a JSON Schema subset:
- Type validation (string, number, integer, boolean, object, array, null)
- Required fields and nested properties
- Min/max constraints for numbers, strings and arrays
- Enum values (any type)
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from stepflow.pipeline.conditions import deep_equal

logger = logging.getLogger(__name__)

VALID_TYPES = {'string', 'number', 'integer', 'boolean', 'object', 'array', 'null'}


class SchemaValidator:
    """
    Validates data against schemas declared on a step.

    An empty or missing schema accepts anything.
    """

    def validate(self, data: Any, schema: Optional[Dict[str, Any]], path: str = 'value') -> Tuple[bool, List[str]]:
        """
        Validate data against schema.

        Args:
            data: Data to validate
            schema: Schema mapping (may be None)
            path: Prefix used in error messages

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        if not schema:
            return (True, [])

        errors: List[str] = []
        self._validate(data, schema, errors, path)
        return (len(errors) == 0, errors)

    def validate_step_input(self, step_name: str, data: Any, schema: Optional[Dict[str, Any]]) -> Tuple[bool, List[str]]:
        """Validate a step's resolved input."""
        is_valid, errors = self.validate(data, schema, path=f"{step_name}.input")
        if not is_valid:
            errors = [f"Input validation failed for step \"{step_name}\": {e}" for e in errors]
            logger.warning(f"Input validation failed for {step_name}: {errors}")
        return (is_valid, errors)

    def validate_step_output(self, step_name: str, data: Any, schema: Optional[Dict[str, Any]]) -> Tuple[bool, List[str]]:
        """Validate a step's output."""
        is_valid, errors = self.validate(data, schema, path=f"{step_name}.output")
        if not is_valid:
            errors = [f"Output validation failed for step \"{step_name}\": {e}" for e in errors]
            logger.warning(f"Output validation failed for {step_name}: {errors}")
        return (is_valid, errors)

    def check_schema(self, schema: Any, path: str) -> List[str]:
        """Structural check of a schema itself, used at definition load time."""
        if not isinstance(schema, dict):
            return [f"{path}: must be an object"]
        expected_type = schema.get('type')
        if expected_type is not None and expected_type not in VALID_TYPES:
            return [f"{path}: \"type\" must be one of: {', '.join(sorted(VALID_TYPES))}"]
        return []

    def _validate(self, data: Any, schema: Dict[str, Any], errors: List[str], path: str) -> None:
        """
        Validate data type and structure.

        Args:
            data: Data to validate
            schema: Schema definition
            errors: List to append errors to
            path: Current validation path (for error messages)
        """
        enum = schema.get('enum')
        if enum is not None and not any(deep_equal(option, data) for option in enum):
            errors.append(f"{path}: Invalid enum value (expected one of {enum}, got {data!r})")
            return

        expected_type = schema.get('type')

        if expected_type == 'object':
            if not isinstance(data, dict):
                errors.append(f"{path}: Expected object, got {_type_name(data)}")
                return

            for field in schema.get('required', []):
                if field not in data:
                    errors.append(f"{path}.{field}: Required field missing")

            for field, field_schema in schema.get('properties', {}).items():
                if field in data:
                    self._validate(data[field], field_schema, errors, f"{path}.{field}")

        elif expected_type == 'array':
            if not isinstance(data, list):
                errors.append(f"{path}: Expected array, got {_type_name(data)}")
                return

            min_items = schema.get('minItems')
            max_items = schema.get('maxItems')

            if min_items is not None and len(data) < min_items:
                errors.append(f"{path}: Array too short (min {min_items}, got {len(data)})")

            if max_items is not None and len(data) > max_items:
                errors.append(f"{path}: Array too long (max {max_items}, got {len(data)})")

            items_schema = schema.get('items')
            if items_schema:
                for i, item in enumerate(data):
                    self._validate(item, items_schema, errors, f"{path}[{i}]")

        elif expected_type == 'string':
            if not isinstance(data, str):
                errors.append(f"{path}: Expected string, got {_type_name(data)}")
                return

            min_length = schema.get('minLength')
            max_length = schema.get('maxLength')

            if min_length is not None and len(data) < min_length:
                errors.append(f"{path}: String too short (min {min_length}, got {len(data)})")

            if max_length is not None and len(data) > max_length:
                errors.append(f"{path}: String too long (max {max_length}, got {len(data)})")

        elif expected_type in ('number', 'integer'):
            if expected_type == 'integer':
                type_ok = isinstance(data, int) and not isinstance(data, bool)
            else:
                type_ok = isinstance(data, (int, float)) and not isinstance(data, bool)
            if not type_ok:
                errors.append(f"{path}: Expected {expected_type}, got {_type_name(data)}")
                return

            minimum = schema.get('minimum')
            maximum = schema.get('maximum')

            if minimum is not None and data < minimum:
                errors.append(f"{path}: Number too small (min {minimum}, got {data})")

            if maximum is not None and data > maximum:
                errors.append(f"{path}: Number too large (max {maximum}, got {data})")

        elif expected_type == 'boolean':
            if not isinstance(data, bool):
                errors.append(f"{path}: Expected boolean, got {_type_name(data)}")

        elif expected_type == 'null':
            if data is not None:
                errors.append(f"{path}: Expected null, got {_type_name(data)}")


def _type_name(data: Any) -> str:
    """JSON type name of a Python value."""
    if data is None:
        return 'null'
    if isinstance(data, bool):
        return 'boolean'
    if isinstance(data, (int, float)):
        return 'number'
    if isinstance(data, str):
        return 'string'
    if isinstance(data, list):
        return 'array'
    if isinstance(data, dict):
        return 'object'
    return type(data).__name__
