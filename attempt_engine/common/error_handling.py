"""
Error Handling for the Attempt Engine

This module provides the error taxonomy used by the attempt controller:
1. A custom exception hierarchy mapping onto the four error classes an
   attempt can hit (transient submit, terminal server, local storage,
   definition fetch)
2. Structured error information for the UI surface
3. Structured error logging
"""

import json
import logging
import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCode(Enum):
    """Standard error codes for the attempt engine"""
    # General errors
    UNKNOWN_ERROR = "unknown_error"

    # Definition errors
    DEFINITION_LOAD_ERROR = "definition_load_error"
    DEFINITION_INVALID = "definition_invalid"

    # Storage errors
    STORAGE_ERROR = "storage_error"

    # Submission errors
    SUBMISSION_FAILED = "submission_failed"
    ALREADY_SUBMITTED = "already_submitted"
    ASSESSMENT_EXPIRED = "assessment_expired"

    # Transport errors
    API_ERROR = "api_error"
    API_CONNECTION_ERROR = "api_connection_error"
    API_TIMEOUT = "api_timeout"


class ErrorInfo(BaseModel):
    """Structured information about an error"""
    model_config = ConfigDict(use_enum_values=True)

    code: ErrorCode
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    retryable: bool = False
    details: Optional[Dict[str, Any]] = None
    exception_type: Optional[str] = None
    exception_message: Optional[str] = None
    stack_trace: Optional[List[str]] = None
    context: Optional[Dict[str, Any]] = None

    @field_validator('stack_trace', mode='before')
    @classmethod
    def validate_stack_trace(cls, v):
        """Format stack trace if it's a string"""
        if isinstance(v, str):
            return v.splitlines()
        return v


class AttemptError(Exception):
    """Base exception class for all attempt engine errors"""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.details = details or {}
        self.cause = cause
        self.context = context or {}
        self.timestamp = datetime.now()

    def to_error_info(self, include_stack_trace: bool = False) -> ErrorInfo:
        """Convert the exception to an ErrorInfo object"""
        stack_trace = None
        if include_stack_trace:
            stack_trace = traceback.format_exc().splitlines()

        details = dict(self.details)
        if self.cause is not None:
            details["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }

        return ErrorInfo(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            severity=self.severity,
            retryable=self.retryable,
            details=details,
            exception_type=type(self).__name__,
            exception_message=str(self),
            stack_trace=stack_trace,
            context=self.context
        )

    def to_dict(self, include_stack_trace: bool = False) -> Dict[str, Any]:
        """Convert the exception to a dictionary"""
        return self.to_error_info(include_stack_trace).model_dump(mode="json")

    def to_json(self, include_stack_trace: bool = False) -> str:
        """Convert the exception to a JSON string"""
        return json.dumps(self.to_dict(include_stack_trace))

    def __str__(self) -> str:
        base_str = f"{self.code.value}: {self.message}"
        if self.details:
            base_str += f" (details: {self.details})"
        if self.cause:
            base_str += f" caused by {type(self.cause).__name__}: {str(self.cause)}"
        return base_str


#------------------------------------------------------------------------------
# Definition errors
#------------------------------------------------------------------------------

class DefinitionError(AttemptError):
    """Base class for assessment definition errors"""
    pass


class DefinitionLoadError(DefinitionError):
    """Error raised when the assessment definition cannot be fetched"""

    retryable = True

    def __init__(
        self,
        assessment_id: int,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["assessment_id"] = assessment_id

        super().__init__(
            message=f"Could not load assessment {assessment_id}",
            code=ErrorCode.DEFINITION_LOAD_ERROR,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )


class DefinitionValidationError(DefinitionError):
    """Error raised when a fetched definition cannot be used for an attempt"""

    def __init__(
        self,
        assessment_id: int,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["assessment_id"] = assessment_id
        details["reason"] = reason

        super().__init__(
            message=f"Assessment {assessment_id} cannot be attempted: {reason}",
            code=ErrorCode.DEFINITION_INVALID,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )

#------------------------------------------------------------------------------
# Storage errors
#------------------------------------------------------------------------------

class StorageError(AttemptError):
    """Error raised when the durable attempt store cannot be read or written"""

    def __init__(
        self,
        operation: str,
        key: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["operation"] = operation
        details["key"] = key

        super().__init__(
            message=f"Storage {operation} failed for {key}",
            code=ErrorCode.STORAGE_ERROR,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )

#------------------------------------------------------------------------------
# Transport errors
#------------------------------------------------------------------------------

class ApiError(AttemptError):
    """
    Error raised by the API client for any non-success exchange.

    ``status`` is None when no HTTP response was received at all
    (connection refused, DNS failure, timeout).
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: ErrorCode = ErrorCode.API_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if status is not None:
            details["status"] = status

        super().__init__(
            message=message,
            code=code,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )
        self.status = status

#------------------------------------------------------------------------------
# Submission errors
#------------------------------------------------------------------------------

class SubmissionError(AttemptError):
    """Base class for submission errors surfaced to the UI"""
    pass


class SubmissionTransientError(SubmissionError):
    """Submission failed in a way a retry can fix; the durable record is kept"""

    retryable = True

    def __init__(
        self,
        session_key: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["session_key"] = session_key

        super().__init__(
            message="Failed to submit the attempt. Please try again.",
            code=ErrorCode.SUBMISSION_FAILED,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )


class AlreadySubmittedError(SubmissionError):
    """The server already holds a submission for this attempt"""

    def __init__(
        self,
        assessment_id: int,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["assessment_id"] = assessment_id

        super().__init__(
            message=f"Assessment {assessment_id} was already submitted",
            code=ErrorCode.ALREADY_SUBMITTED,
            severity=ErrorSeverity.INFO,
            details=details,
            cause=cause,
            context=context
        )


class AssessmentExpiredError(SubmissionError):
    """The assessment no longer accepts submissions"""

    def __init__(
        self,
        assessment_id: int,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["assessment_id"] = assessment_id

        super().__init__(
            message=f"Assessment {assessment_id} has expired",
            code=ErrorCode.ASSESSMENT_EXPIRED,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )


def convert_exception(
    exception: Exception,
    default_message: str = "An unexpected error occurred",
    default_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
    default_severity: ErrorSeverity = ErrorSeverity.ERROR,
    context: Optional[Dict[str, Any]] = None
) -> AttemptError:
    """
    Convert a standard exception to an AttemptError.

    Args:
        exception: The exception to convert
        default_message: Default message if the exception has no message
        default_code: Default error code
        default_severity: Default error severity
        context: Optional additional context

    Returns:
        Converted AttemptError
    """
    if isinstance(exception, AttemptError):
        if context:
            exception.context.update(context)
        return exception

    return AttemptError(
        message=str(exception) or default_message,
        code=default_code,
        severity=default_severity,
        cause=exception,
        context=context
    )


def error_payload(
    error: Union[AttemptError, Exception],
    include_details: bool = True
) -> Dict[str, Any]:
    """
    Build the error object handed to the UI surface.

    Args:
        error: The error to describe
        include_details: Whether to include error details

    Returns:
        Dictionary with status, code, message and retryable flag
    """
    if not isinstance(error, AttemptError):
        error = convert_exception(error)

    error_info = error.to_error_info()
    payload = {
        "status": "error",
        "code": error_info.code,
        "message": error_info.message,
        "retryable": error_info.retryable,
    }
    if include_details and error_info.details:
        payload["details"] = error_info.details
    return payload


def log_error(
    error: Union[AttemptError, Exception],
    level: int = logging.ERROR,
    include_stack_trace: bool = False,
    context: Optional[Dict[str, Any]] = None,
    log: Optional[logging.Logger] = None
) -> None:
    """
    Log an error with standardized format.

    Args:
        error: The error to log
        level: Logging level
        include_stack_trace: Whether to include stack trace
        context: Additional context to include
        log: Logger to write to (defaults to this module's logger)
    """
    if not isinstance(error, AttemptError):
        error = convert_exception(error, context=context)
    elif context:
        error.context.update(context)

    message = f"ERROR [{error.code.value}]: {error.message}"

    if error.context:
        context_str = ", ".join(f"{k}={v}" for k, v in error.context.items())
        message += f" (context: {context_str})"

    if error.cause:
        message += f" caused by {type(error.cause).__name__}: {str(error.cause)}"

    if include_stack_trace:
        message += f"\n{traceback.format_exc()}"

    (log or logger).log(level, message)
