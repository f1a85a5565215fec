"""
podsplit Error Classes - Structured exceptions for the split pipeline

Usage:
    from podsplit.errors import (
        PodsplitError, ConfigError, SourceIOError,
        ExtractionError, VerificationError, ExternalToolError
    )

    try:
        run_split(settings)
    except ExtractionError as e:
        print(f"Chunk {e.details['ordinal']} failed: {e}")
"""

import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories for error classification"""
    CONFIGURATION = "configuration"
    SOURCE = "source"
    EXTRACTION = "extraction"
    VERIFICATION = "verification"
    EXTERNAL_TOOL = "external_tool"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error"""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    operation: Optional[str] = None
    file_path: Optional[str] = None
    command: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {"timestamp": self.timestamp}
        if self.operation:
            result["operation"] = self.operation
        if self.file_path:
            result["file_path"] = self.file_path
        if self.command:
            result["command"] = self.command
        if self.extra:
            result.update(self.extra)
        return result


class PodsplitError(Exception):
    """
    Base exception for all podsplit errors.

    Carries a message, an error code, severity and category, a details
    dictionary with whatever an operator needs to resume (chunk ordinal,
    expected vs actual counts), suggested fixes and the underlying cause.
    """

    default_code = "PODSPLIT_ERROR"
    default_category = ErrorCategory.UNKNOWN
    default_severity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        category: Optional[ErrorCategory] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[ErrorContext] = None,
        suggestions: Optional[List[str]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.severity = severity or self.default_severity
        self.category = category or self.default_category
        self.details = details or {}
        self.context = context or ErrorContext()
        self.suggestions = suggestions or []
        self.cause = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization"""
        result = {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
        }
        if self.details:
            result["details"] = self.details
        if self.context:
            result["context"] = self.context.to_dict()
        if self.suggestions:
            result["suggestions"] = self.suggestions
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def format_message(self, verbose: bool = False) -> str:
        """Format error message for display"""
        lines = [f"[{self.code}] {self.message}"]

        if verbose:
            if self.details:
                lines.append("Details:")
                for key, value in self.details.items():
                    lines.append(f"  {key}: {value}")

            if self.suggestions:
                lines.append("Suggestions:")
                for suggestion in self.suggestions:
                    lines.append(f"  - {suggestion}")

            if self.cause:
                lines.append(f"Caused by: {self.cause}")

        return "\n".join(lines)


class ConfigError(PodsplitError):
    """Invalid batch size, path or configuration value"""
    default_code = "CONFIG_ERROR"
    default_category = ErrorCategory.CONFIGURATION

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        value: Any = None,
        config_file: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if value is not None:
            details["value"] = str(value)
        if config_file:
            details["config_file"] = config_file
        super().__init__(message, details=details, **kwargs)


class SourceIOError(PodsplitError):
    """Read source cannot be opened or listed"""
    default_code = "SOURCE_IO_ERROR"
    default_category = ErrorCategory.SOURCE
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if path:
            details["path"] = str(path)
        super().__init__(message, details=details, **kwargs)


class ExtractionError(PodsplitError):
    """Subset extraction failed or timed out for a chunk"""
    default_code = "EXTRACTION_ERROR"
    default_category = ErrorCategory.EXTRACTION

    def __init__(
        self,
        message: str,
        ordinal: Optional[int] = None,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        timeout: Optional[float] = None,
        stderr: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if ordinal is not None:
            details["ordinal"] = ordinal
        if command:
            details["command"] = command
        if exit_code is not None:
            details["exit_code"] = exit_code
        if timeout is not None:
            details["timeout"] = timeout
        if stderr:
            details["stderr"] = stderr[:500]
        super().__init__(message, details=details, **kwargs)

    @property
    def ordinal(self) -> Optional[int]:
        return self.details.get("ordinal")


class VerificationError(PodsplitError):
    """
    Materialized chunk failed verification.

    ``soft`` marks a count mismatch without duplicates: extraction worked
    but returned a different number of reads than requested. Soft errors
    are logged and the run continues unless strict mode is on.
    """
    default_code = "VERIFICATION_ERROR"
    default_category = ErrorCategory.VERIFICATION

    def __init__(
        self,
        message: str,
        ordinal: Optional[int] = None,
        path: Optional[str] = None,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
        unique: Optional[int] = None,
        soft: bool = False,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if ordinal is not None:
            details["ordinal"] = ordinal
        if path:
            details["path"] = str(path)
        if expected is not None:
            details["expected"] = expected
        if actual is not None:
            details["actual"] = actual
        if unique is not None:
            details["unique"] = unique
        if soft:
            kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, details=details, **kwargs)
        self.soft = soft

    @property
    def ordinal(self) -> Optional[int]:
        return self.details.get("ordinal")


class ExternalToolError(PodsplitError):
    """Error from a pipeline tool (pod5, dorado, samtools)"""
    default_code = "EXTERNAL_TOOL_ERROR"
    default_category = ErrorCategory.EXTERNAL_TOOL

    def __init__(
        self,
        message: str,
        tool: Optional[str] = None,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if tool:
            details["tool"] = tool
        if command:
            details["command"] = command
        if exit_code is not None:
            details["exit_code"] = exit_code
        if stderr:
            details["stderr"] = stderr[:500]
        super().__init__(message, details=details, **kwargs)


# Error handling utilities

def format_exception(exc: Exception, verbose: bool = False) -> str:
    """Format an exception for display"""
    if isinstance(exc, PodsplitError):
        return exc.format_message(verbose=verbose)

    if verbose:
        return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return str(exc)


def exit_code_for(exc: Exception) -> int:
    """Map an exception onto the CLI exit status"""
    if isinstance(exc, ConfigError):
        return 2
    return 1


def handle_error(
    exc: Exception,
    exit_code: Optional[int] = None,
    verbose: bool = False,
    raise_error: bool = False
) -> int:
    """
    Standard error handler for the command line.

    Prints the formatted error to stderr and returns the exit status
    (or re-raises when ``raise_error`` is set).
    """
    message = format_exception(exc, verbose=verbose)

    if isinstance(exc, PodsplitError):
        prefix = f"Error [{exc.code}]"
    else:
        prefix = f"Error [{type(exc).__name__}]"

    print(f"{prefix}: {message}", file=sys.stderr)

    if raise_error:
        raise exc
    return exit_code if exit_code is not None else exit_code_for(exc)
