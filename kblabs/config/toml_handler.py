"""
TOML File I/O Handler.

This module provides kb.toml parsing and generation.

Key features:
- Parse TOML files using tomllib
- Write TOML files using tomlkit (preserves comments and formatting)
- Generate a commented kb.toml from the declared sections
"""

import tomllib
from pathlib import Path
from typing import Any

import tomlkit

from kblabs.config.schema import ConfigField


class TOMLError(Exception):
    """Base exception for TOML-related errors."""

    pass


def read_toml(file_path: Path) -> dict[str, Any]:
    """
    Read and parse a TOML file.

    Args:
        file_path: Path to the TOML file

    Returns:
        Parsed TOML data as dictionary

    Raises:
        TOMLError: If file cannot be read or parsed
    """
    try:
        with open(file_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise TOMLError(f"TOML file not found: {file_path}") from e
    except tomllib.TOMLDecodeError as e:
        raise TOMLError(f"Failed to parse TOML file {file_path}: {e}") from e
    except OSError as e:
        raise TOMLError(f"Failed to read TOML file {file_path}: {e}") from e


def write_toml(file_path: Path, content: str) -> None:
    """
    Write rendered TOML text to disk.

    Args:
        file_path: Path to the TOML file
        content: Rendered TOML text

    Raises:
        TOMLError: If file cannot be written
    """
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "w", encoding="utf-8") as f:
            f.write(content)
    except OSError as e:
        raise TOMLError(f"Failed to write TOML file {file_path}: {e}") from e


def generate_toml_from_schemas(sections: dict[str, dict[str, ConfigField]]) -> str:
    """
    Render a kb.toml holding every section's defaults, with comments.

    Args:
        sections: Section name -> schema

    Returns:
        TOML text
    """
    doc = tomlkit.document()
    doc.add(tomlkit.comment("kb plugin engine settings"))
    doc.add(tomlkit.nl())

    for section_name, schema in sections.items():
        table = tomlkit.table()

        for field_name, field in schema.items():
            if field.description:
                table.add(tomlkit.comment(field.description))
            if field.choices is not None:
                table.add(tomlkit.comment(f"Choices: {', '.join(map(str, field.choices))}"))
            table.add(field_name, field.default)

        doc.add(section_name, table)

    return tomlkit.dumps(doc)
