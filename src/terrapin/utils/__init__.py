"""Utility modules for logging, errors and retries."""

from terrapin.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    EngineError,
    ConfigurationError,
    ParseError,
    DeclarationReferenceError,
    DeclarationTypeError,
    CycleError,
    StateError,
    LockConflict,
    ProviderError,
    TransientProviderError,
    FatalProviderError,
    IndeterminateProviderError,
    ErrorHandler,
    error_handler
)
from terrapin.utils.logging import LogContext, get_logger, setup_logging
from terrapin.utils.retry import RetryPolicy

__all__ = [
    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'EngineError',
    'ConfigurationError',
    'ParseError',
    'DeclarationReferenceError',
    'DeclarationTypeError',
    'CycleError',
    'StateError',
    'LockConflict',
    'ProviderError',
    'TransientProviderError',
    'FatalProviderError',
    'IndeterminateProviderError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'LogContext',
    'get_logger',
    'setup_logging',

    # Retry
    'RetryPolicy',
]
