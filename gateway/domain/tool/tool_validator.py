from typing import Dict, Any, Optional, Tuple
import json

import jsonschema
from pydantic import ValidationError

from gateway.domain.models.tool import ToolDefinition


class ToolDeclarationError(ValueError):
    """A tool declaration cannot be exposed to the model"""


class ToolParameterValidator:
    @staticmethod
    def validate_declaration(raw: Dict[str, Any]) -> ToolDefinition:
        """Check a declaration received from a plugin or remote peer"""

        try:
            definition = ToolDefinition.model_validate(raw)
        except ValidationError as e:
            raise ToolDeclarationError(f"Invalid tool declaration: {e.errors()[0]['msg']}") from e

        if not definition.name:
            raise ToolDeclarationError("Tool declaration has no name")

        schema = definition.parameters.model_dump(exclude_none=True)
        try:
            validator = jsonschema.validators.validator_for(schema)
            validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            raise ToolDeclarationError(f"Invalid parameters schema for {definition.name}: {e.message}") from e

        return definition

    @staticmethod
    def parse_arguments(raw_arguments: str) -> Tuple[Dict[str, Any], Optional[str]]:
        """
        Parse a tool call's accumulated argument string.

        Returns the parsed arguments and, when the string is not a JSON
        object, ``{}`` together with a description of the problem.
        """

        if not raw_arguments or not raw_arguments.strip():
            return {}, None

        try:
            parsed = json.loads(raw_arguments)
        except json.JSONDecodeError as e:
            return {}, f"Invalid JSON arguments ({e.msg} at position {e.pos})"

        if not isinstance(parsed, dict):
            return {}, f"Arguments must be a JSON object, got {type(parsed).__name__}"

        return parsed, None
