"""Error handling framework for planning and provider operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass, asdict
import socket

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from terrapin.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur while planning or applying."""
    CONFIGURATION = "configuration"
    DECLARATION = "declaration"
    DEPENDENCY = "dependency"
    STATE = "state"
    PROVIDER = "provider"
    CREDENTIAL = "credential"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Operation failed but siblings can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    kind: Optional[str] = None
    operation: Optional[str] = None
    source: Optional[str] = None
    provider_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class EngineError(Exception):
    """Base exception for engine errors.

    ``kind`` is the taxonomy name reported to the operator (for example
    ``"CycleError"``); ``exit_code`` is the CLI exit status for aborts
    caused by this error.
    """

    kind = "EngineError"
    exit_code = 1

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize engine error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def __str__(self) -> str:
        if self.context.resource_id:
            return f"{self.message} (resource: {self.context.resource_id})"
        return self.message

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.kind}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.context.source:
            lines.append(f"   Source: {self.context.source}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("")
            lines.append("Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'kind': self.kind,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(EngineError):
    """Error in the engine configuration file or options."""

    kind = "ConfigurationError"

    def __init__(self, message: str, errors: Optional[List[Dict]] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return self.message

        lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            lines.append(f"  - {location}: {error.get('msg', 'Unknown error')}")
        return "\n".join(lines)


class ParseError(EngineError):
    """Malformed declaration syntax."""

    kind = "ParseError"
    exit_code = 2

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DECLARATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DeclarationReferenceError(EngineError):
    """A declaration refers to a resource or output that is not declared."""

    kind = "ReferenceError"
    exit_code = 3

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DECLARATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DeclarationTypeError(EngineError):
    """An attribute value does not match the resource kind's schema."""

    kind = "TypeError"
    exit_code = 4

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DECLARATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CycleError(EngineError):
    """The dependency graph contains a cycle."""

    kind = "CycleError"
    exit_code = 5

    def __init__(self, message: str, cycle: Optional[List[str]] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.cycle = cycle or []


class StateError(EngineError):
    """Error related to state management."""

    kind = "StateError"

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class LockConflict(StateError):
    """Another engine instance holds the state lock or wrote the state first."""

    kind = "LockConflict"
    exit_code = 6


class ProviderError(EngineError):
    """Base class for failures reported by a provider call."""

    kind = "ProviderError"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROVIDER)
        kwargs.setdefault('severity', ErrorSeverity.ERROR)
        super().__init__(message, **kwargs)


class TransientProviderError(ProviderError):
    """Failure expected to succeed on retry (timeout, throttling)."""

    kind = "TransientProviderError"


class FatalProviderError(ProviderError):
    """Failure that will not succeed on retry (authorization, quota, invalid attribute)."""

    kind = "FatalProviderError"


class IndeterminateProviderError(ProviderError):
    """The call may or may not have taken effect; the outcome is unknown."""

    kind = "Unknown"
    exit_code = 7


class ErrorHandler:
    """Classifies raw provider exceptions into the engine taxonomy."""

    # AWS error codes worth retrying
    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'RequestTimeoutException',
        'ServiceUnavailable',
        'Unavailable',
        'ThrottlingException',
        'Throttling',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'RequestThrottled',
        'InternalError',
        'InternalFailure',
        'ServiceException',
        'IncorrectState',
        'DependencyViolation',
    }

    # AWS error codes mapped to operator-facing messages and suggestions
    FATAL_ERROR_MAPPING = {
        'AuthFailure': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'Provider credentials are invalid or expired',
            'suggestions': [
                'Verify credentials using: aws sts get-caller-identity',
                'Refresh expired session credentials',
            ]
        },
        'UnauthorizedOperation': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'Operation not authorized',
            'suggestions': [
                'Add the required IAM permission for this operation',
                'Verify you are operating in the correct region',
            ]
        },
        'AccessDenied': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
            ]
        },
        'VpcLimitExceeded': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Network quota exceeded',
            'suggestions': [
                'Request a service quota increase',
                'Remove unused networks',
            ]
        },
        'InstanceLimitExceeded': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Instance quota exceeded',
            'suggestions': [
                'Request a service quota increase',
                'Choose a smaller instance size',
            ]
        },
        'InvalidParameterValue': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Invalid attribute value',
            'suggestions': [
                'Check the attribute values in the declaration',
            ]
        },
        'InvalidSubnet.Range': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Subnet CIDR is outside the network range',
            'suggestions': [
                'Pick a subnet CIDR contained in the network CIDR',
            ]
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def classify(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ProviderError:
        """Convert an arbitrary provider exception into a ProviderError.

        Args:
            error: The exception raised by the provider client
            context: Optional error context

        Returns:
            TransientProviderError, FatalProviderError or IndeterminateProviderError
        """
        context = context or ErrorContext()

        if isinstance(error, ProviderError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return FatalProviderError(
                message='No usable provider credentials found',
                category=ErrorCategory.CREDENTIAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure credentials using: aws configure',
                    'Specify a profile with --profile',
                ]
            )

        # A read timeout means the request may have reached the provider
        if isinstance(error, ReadTimeoutError):
            return IndeterminateProviderError(
                message=f'Provider call timed out after sending: {error}',
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error,
                suggestions=['Inspect the provider console and resolve the resource manually']
            )

        if isinstance(error, (ConnectTimeoutError, EndpointConnectionError,
                              ConnectionError, TimeoutError, socket.timeout)):
            return TransientProviderError(
                message=f'Network error: {error}',
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error
            )

        self.logger.debug(f"Unclassified provider exception {type(error).__name__}: {error}")
        return FatalProviderError(
            message=str(error) or type(error).__name__,
            category=ErrorCategory.UNKNOWN,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> ProviderError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized ProviderError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.provider_operation = error.operation_name

        if error_code in self.TRANSIENT_ERROR_CODES:
            return TransientProviderError(
                message=f"{error_code}: {error_message}",
                context=context,
                cause=error
            )

        error_info = self.FATAL_ERROR_MAPPING.get(error_code)
        if error_info:
            return FatalProviderError(
                message=f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return FatalProviderError(
            message=f"Provider error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=[
                'Check the provider documentation for this error code',
                f'Request ID: {context.request_id}',
            ]
        )


# Global error handler instance
error_handler = ErrorHandler()
