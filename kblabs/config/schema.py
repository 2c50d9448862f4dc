"""
Settings Schema.

This module provides schema declaration and validation for kb.toml sections.

Key features:
- Typed field definitions with constraints
- List item typing (e.g. list of strategy names)
- Partial sections merged over defaults
"""

from dataclasses import dataclass
from typing import Any


class SchemaError(Exception):
    """Base exception for schema-related errors."""

    pass


class ValidationError(SchemaError):
    """Raised when a settings value fails validation."""

    pass


@dataclass
class ConfigField:
    """
    A single settings field with type and constraints.

    Attributes:
        type_: Expected type of the value
        default: Default value
        description: Human-readable description (written as a TOML comment)
        choices: Allowed values; for list fields, allowed items
        item_type: Expected type of list items (list fields only)
    """

    type_: type
    default: Any
    description: str = ""
    choices: list[Any] | None = None
    item_type: type | None = None

    def __post_init__(self):
        """Validate the field definition itself."""
        if not isinstance(self.default, self.type_):
            raise SchemaError(
                f"Default value {self.default!r} does not match type {self.type_.__name__}"
            )

        if self.item_type is not None and self.type_ is not list:
            raise SchemaError("item_type is only supported for list fields")

        if self.choices is not None:
            if not isinstance(self.choices, list):
                raise SchemaError("choices must be a list")
            self.validate(self.default)

    def validate(self, value: Any) -> None:
        """
        Validate a value against this field.

        Args:
            value: Value to validate

        Raises:
            ValidationError: If validation fails
        """
        # bool is an int subclass; keep the two apart
        if not isinstance(value, self.type_) or (
            self.type_ is int and isinstance(value, bool)
        ):
            raise ValidationError(
                f"Expected type {self.type_.__name__}, got {type(value).__name__}"
            )

        if self.type_ is list:
            for item in value:
                if self.item_type is not None and not isinstance(item, self.item_type):
                    raise ValidationError(
                        f"Expected items of type {self.item_type.__name__}, "
                        f"got {type(item).__name__}"
                    )
                if self.choices is not None and item not in self.choices:
                    raise ValidationError(
                        f"Item {item!r} not in allowed choices {self.choices}"
                    )
            return

        if self.choices is not None and value not in self.choices:
            raise ValidationError(f"Value {value!r} not in allowed choices {self.choices}")


def validate_config(
    config: dict[str, Any], schema: dict[str, ConfigField]
) -> dict[str, Any]:
    """
    Validate a settings section against a schema.

    Fields absent from ``config`` take their defaults.

    Args:
        config: Parsed section
        schema: Schema dictionary (field_name -> ConfigField)

    Returns:
        Complete section with defaults filled in

    Raises:
        ValidationError: If an unknown or invalid field is present
    """
    for key in config:
        if key not in schema:
            raise ValidationError(f"Unknown configuration field: {key}")

    merged = generate_default_config(schema)
    for field_name, value in config.items():
        try:
            schema[field_name].validate(value)
        except ValidationError as e:
            raise ValidationError(f"Field '{field_name}': {e}") from e
        merged[field_name] = value

    return merged


def generate_default_config(schema: dict[str, ConfigField]) -> dict[str, Any]:
    """Build a section holding every field's default value."""
    return {
        field_name: list(field.default) if isinstance(field.default, list) else field.default
        for field_name, field in schema.items()
    }
