"""Input validation utilities for the preview host."""

from __future__ import annotations

import re
from pathlib import Path

# Pattern for valid IDs: alphanumeric, underscores, hyphens only
# This prevents path traversal (../) and command injection
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Read-only utilities callers may run inside a preview directory
ALLOWED_COMMANDS = (
    "grep",
    "find",
    "tree",
    "cat",
    "head",
    "tail",
    "wc",
    "ls",
    "pwd",
    "file",
    "which",
    "type",
    "dirname",
    "basename",
    "realpath",
)

MAX_COMMAND_ARGS = 10

DANGEROUS_ARG_PATTERNS = (
    re.compile(r"[;&|`$]"),  # command chaining
    re.compile(r"\.\."),  # directory traversal
    re.compile(r"/etc/|/proc/|/sys/"),  # system directories
    re.compile(r"rm\s|del\s|mv\s|cp\s"),  # file operations
    re.compile(r"wget|curl|nc\s|netcat"),  # network operations
    re.compile(r"eval|exec|system"),  # code execution
    re.compile(r"^-(delete|fprint0?|fprintf|fls|ok|okdir|execdir)$"),  # find actions that write or run
)


class ValidationError(ValueError):
    """Raised when input validation fails."""


def validate_id(value: str, id_type: str = "ID") -> str:
    """Validate that an ID contains only safe characters.

    Args:
        value: The ID value to validate
        id_type: Description of the ID type for error messages

    Returns:
        The validated ID (unchanged if valid)

    Raises:
        ValidationError: If the ID contains unsafe characters
    """
    if not value:
        raise ValidationError(f"Invalid {id_type}: cannot be empty")

    if not SAFE_ID_PATTERN.match(value):
        raise ValidationError(f"Invalid {id_type}: contains unsafe characters")

    return value


def validate_preview_id(preview_id: str) -> str:
    """Validate a preview ID."""
    return validate_id(preview_id, "preview_id")


def validate_project_id(project_id: str) -> str:
    """Validate a project ID."""
    return validate_id(project_id, "project_id")


def validate_command(command: str, args: list[str]) -> None:
    """Check a command line against the read-only allow-list.

    Raises:
        ValidationError: If the command is not allowed, has too many
            arguments, or any argument matches a dangerous pattern.
    """
    if not command:
        raise ValidationError("Command is required")

    if command not in ALLOWED_COMMANDS:
        raise ValidationError(f"Command '{command}' is not allowed")

    if len(args) > MAX_COMMAND_ARGS:
        raise ValidationError("Too many arguments")

    for arg in args:
        if any(pattern.search(arg) for pattern in DANGEROUS_ARG_PATTERNS):
            raise ValidationError(f"Dangerous pattern detected in argument: {arg}")


def resolve_inside(root: Path, relative: str) -> Path:
    """Resolve ``relative`` against ``root`` and require it to stay inside.

    Raises:
        ValidationError: If the resolved path escapes ``root``.
    """
    base = root.resolve()
    target = (base / relative).resolve()
    if target != base and base not in target.parents:
        raise ValidationError(f"Path outside project bounds: {relative}")
    return target
