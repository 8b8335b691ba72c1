"""
Exception hierarchy for the unisrv CLI.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so that every failure can be rendered consistently and
mapped to a process exit status.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the unisrv CLI."""

    # Authentication errors (1000-1099)
    AUTH_SESSION_MISSING = "AUTH_1001"
    AUTH_SESSION_EXPIRED = "AUTH_1002"
    AUTH_REFRESH_REJECTED = "AUTH_1003"
    AUTH_LOGIN_FAILED = "AUTH_1004"
    AUTH_TOKEN_REJECTED = "AUTH_1005"

    # Network and communication errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_SERVER_ERROR = "NETWORK_2003"
    NETWORK_INVALID_RESPONSE = "NETWORK_2004"

    # Resource resolution errors (3000-3099)
    RESOURCE_NOT_FOUND = "RESOURCE_3001"
    RESOURCE_AMBIGUOUS = "RESOURCE_3002"

    # Validation errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_REJECTED_BY_SERVER = "VALIDATION_4002"
    VALIDATION_CONFLICT = "VALIDATION_4003"

    # Credential storage errors (5000-5099)
    STORAGE_WRITE_FAILED = "STORAGE_5001"
    STORAGE_READ_FAILED = "STORAGE_5002"
    STORAGE_UNAVAILABLE = "STORAGE_5003"

    # Configuration errors (8000-8099)
    CONFIG_INVALID_FORMAT = "CONFIG_8001"
    CONFIG_INVALID_VALUE = "CONFIG_8002"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    LOGIN = "login"
    RETRY_LATER = "retry_later"
    CHECK_CONNECTION = "check_connection"
    REFINE_REFERENCE = "refine_reference"
    FIX_INPUT = "fix_input"
    CHECK_CONFIGURATION = "check_configuration"
    CONTACT_ADMIN = "contact_admin"


class UnisrvError(Exception):
    """
    Base exception class for all unisrv CLI errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    exit_code = 1

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'exit_code': self.exit_code
            }
        }


class AuthenticationExpired(UnisrvError):
    """The session is missing, expired, or was rejected; the user must log in again."""

    exit_code = 2

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_SESSION_EXPIRED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN],
            **kwargs
        )


class NotFound(UnisrvError):
    """No resource matched the given reference, or the server returned 404."""

    exit_code = 3

    def __init__(self, message: str, kind: Optional[str] = None, reference: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if kind:
            context['kind'] = kind
        if reference is not None:
            context['reference'] = reference

        super().__init__(
            message=message,
            error_code=ErrorCode.RESOURCE_NOT_FOUND,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.FIX_INPUT],
            context=context,
            **kwargs
        )


class AmbiguousReference(UnisrvError):
    """More than one resource matched an identifier prefix or name."""

    exit_code = 4

    def __init__(self, message: str, match_count: int, kind: Optional[str] = None,
                 reference: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        context['match_count'] = match_count
        if kind:
            context['kind'] = kind
        if reference is not None:
            context['reference'] = reference

        super().__init__(
            message=message,
            error_code=ErrorCode.RESOURCE_AMBIGUOUS,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.REFINE_REFERENCE],
            context=context,
            **kwargs
        )
        self.match_count = match_count


class ValidationError(UnisrvError):
    """Input was rejected, either locally or by the server."""

    exit_code = 5

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.FIX_INPUT])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class ServiceUnavailable(UnisrvError):
    """The server failed (5xx) or could not be reached."""

    exit_code = 6

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_SERVER_ERROR, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_LATER, RecoveryAction.CHECK_CONNECTION],
            **kwargs
        )


class NetworkTimeout(UnisrvError):
    """A request did not complete within the configured timeout."""

    exit_code = 7

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.NETWORK_TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_LATER, RecoveryAction.CHECK_CONNECTION],
            **kwargs
        )


class CredentialStoreError(UnisrvError):
    """The session could not be read from or written to secret storage."""

    exit_code = 8

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.CHECK_CONFIGURATION],
            **kwargs
        )


class ConfigurationError(UnisrvError):
    """Configuration related errors."""

    exit_code = 8

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        error_code = kwargs.pop('error_code', ErrorCode.CONFIG_INVALID_VALUE)

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.CHECK_CONFIGURATION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> UnisrvError:
    """
    Convert a generic exception to a structured UnisrvError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured UnisrvError
    """
    if isinstance(exception, UnisrvError):
        return exception

    if isinstance(exception, TimeoutError):
        return NetworkTimeout(str(exception) or "Operation timed out", context=context, cause=exception)

    if isinstance(exception, ConnectionError):
        return ServiceUnavailable(
            str(exception),
            error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
            context=context,
            cause=exception
        )

    if isinstance(exception, ValueError):
        return ValidationError(str(exception), context=context, cause=exception)

    return UnisrvError(
        message=str(exception) or type(exception).__name__,
        error_code=default_error_code,
        context=context,
        cause=exception
    )
