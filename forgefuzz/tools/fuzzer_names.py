"""
Fuzzer name helpers.

Names end up inside shell command strings run in the container, so anything
outside a conservative character set is rejected before it gets there.
"""

from __future__ import annotations

import re

_ALLOWED_NAME = re.compile(r"^[a-zA-Z0-9_.\-/:]+$")
MAX_NAME_LENGTH = 256


class InvalidTargetError(ValueError):
    """Raised when a fuzzer name or target token is unsafe to pass to a shell."""


def validate_fuzzer_name(name: object) -> str | None:
    """Return an error message for an unsafe name, or None when it is safe."""
    if not isinstance(name, str) or not name:
        return "Fuzzer name must be a non-empty string"
    if not name.strip():
        return "Fuzzer name cannot be empty or whitespace only"
    if not _ALLOWED_NAME.match(name):
        return (
            f'Invalid fuzzer name: "{name}". Only alphanumeric characters, hyphens, '
            "underscores, dots, colons, and forward slashes are allowed."
        )
    if ".." in name:
        return f'Invalid fuzzer name: "{name}". Path traversal sequences (..) are not allowed.'
    if name.startswith("-"):
        return f'Invalid fuzzer name: "{name}". Fuzzer names cannot start with a hyphen.'
    if len(name) > MAX_NAME_LENGTH:
        return f"Invalid fuzzer name: too long (max {MAX_NAME_LENGTH} characters)"
    return None


def ensure_valid_name(name: str) -> str:
    error = validate_fuzzer_name(name)
    if error:
        raise InvalidTargetError(error)
    return name
