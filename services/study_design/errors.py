"""
Study Design Engine errors

- ConfigValidationError: load-time config inconsistency (fatal, engine must not serve)
- ConfigFileError: config file missing, unreadable, or not a YAML mapping
- InvalidDesignInputError: out-of-enum value passed across a component boundary
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .registry import ValidationIssue


class ConfigValidationError(RuntimeError):
    """Config snapshot has at least one error-level validation issue."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        errors = [i for i in self.issues if i.severity == "error"]
        preview = "; ".join(f"{i.location}: {i.message}" for i in errors[:3])
        more = f" (+{len(errors) - 3} more)" if len(errors) > 3 else ""
        super().__init__(f"{len(errors)} config error(s): {preview}{more}")


class ConfigFileError(ValueError):
    """A single config file could not be loaded."""

    def __init__(self, filename: str, message: str):
        self.filename = filename
        self.message = message
        super().__init__(f"{filename}: {message}")


class InvalidDesignInputError(ValueError):
    """Contract violation: value outside a closed enumeration."""

    def __init__(self, field: str, value: object, allowed: tuple[str, ...]):
        self.field = field
        self.value = value
        self.allowed = allowed
        super().__init__(f"Invalid {field}: {value!r} (allowed: {', '.join(allowed)})")
