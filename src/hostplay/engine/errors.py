# Copyright (c) 2024 Hostplay Contributors
# MIT License

"""
Hostplay Error Classes.

All custom exceptions for clear error handling and exit codes.
Build-time errors abort the run before any host is contacted; execution-time
errors are localized to a single (host, task) pair by the scheduler.
"""

from __future__ import annotations

import enum
from typing import List, Optional


class ExitCode(enum.IntEnum):
    """Process exit codes for hostplay-playbook."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    HOST_UNREACHABLE = 4
    KEYBOARD_INTERRUPT = 130


class HostplayError(Exception):
    """Base exception for all Hostplay errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ConfigError(HostplayError):
    """Invalid configuration value from file, environment or CLI."""

    def __init__(self, key: str, value: object, reason: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid setting {key}={value!r}: {reason}")


class ParseError(HostplayError):
    """Error parsing inventory, playbook, or other input files."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class BuildError(ParseError):
    """Malformed task tree or unresolved static import."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class InventoryError(ParseError):
    """Error in inventory file or host resolution."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class GroupCycleError(InventoryError):
    """The group hierarchy contains a cycle."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Group hierarchy cycle: {' -> '.join(cycle)}")


class ConnectionError(HostplayError):
    """Error connecting to a remote host."""

    exit_code: int = ExitCode.HOST_UNREACHABLE

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        details: str | None = None,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        conn_info = f" ({connection_type})" if connection_type else ""
        super().__init__(f"Connection to {host}{conn_info} failed: {message}", details)


class TemplateError(HostplayError):
    """Error rendering a template or evaluating a condition."""

    exit_code: int = ExitCode.HOST_FAILED

    # Classification prefix reported in failed task results
    kind: str = "evaluation error"

    def __init__(
        self,
        message: str,
        template: str | None = None,
    ) -> None:
        self.template = template

        details = None
        if template:
            # Truncate long templates
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"{self.kind}: {message}", details)


class UndefinedVariableError(TemplateError):
    """A template or condition referenced a variable that is not defined."""

    kind = "undefined variable"

    def __init__(self, variable: Optional[str], template: str | None = None) -> None:
        self.variable = variable
        super().__init__(f"'{variable}' is undefined" if variable else "undefined value", template)


class EvaluationError(TemplateError):
    """Syntax or runtime error inside an expression."""


class IncludeError(HostplayError):
    """A dynamic include could not be resolved at execution time."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"Could not include '{path}': {message}")
