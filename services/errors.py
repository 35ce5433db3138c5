"""Exception hierarchy for the MLS sync pipeline."""

from datetime import datetime
from typing import Any, Dict, Optional

from .models import SyncError, SyncErrorType


class MLSSyncException(Exception):
    """Base exception for all MLS sync errors."""


class ProviderError(MLSSyncException):
    """Raised when talking to an upstream MLS provider fails."""

    error_type = SyncErrorType.API
    default_retryable = False

    def __init__(
        self,
        message: str,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
        reset_at: Optional[datetime] = None,
        mls_record_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.status_code = status_code
        self.reset_at = reset_at
        self.mls_record_id = mls_record_id
        self.details = details or {}

    def to_sync_error(self, run_id: Optional[str] = None, provider_id: Optional[str] = None) -> SyncError:
        details = dict(self.details)
        if self.status_code is not None:
            details['status_code'] = self.status_code
        if self.reset_at is not None:
            details['reset_at'] = self.reset_at.isoformat()
        return SyncError(
            error_type=self.error_type,
            message=self.message,
            retryable=self.retryable,
            mls_record_id=self.mls_record_id,
            run_id=run_id,
            provider_id=provider_id,
            details=details,
        )


class AuthenticationError(ProviderError):
    """Raised when credentials are rejected or a token cannot be obtained."""

    error_type = SyncErrorType.AUTH

    def __init__(self, message: str, **kwargs):
        kwargs['retryable'] = False
        super().__init__(message, **kwargs)


class NetworkError(ProviderError):
    """Raised on timeouts and connection failures."""

    error_type = SyncErrorType.NETWORK
    default_retryable = True


class ApiError(ProviderError):
    """Raised when a provider answers with a non-2xx status."""

    error_type = SyncErrorType.API

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        if 'retryable' not in kwargs or kwargs['retryable'] is None:
            kwargs['retryable'] = status_code is not None and status_code >= 500
        super().__init__(message, status_code=status_code, **kwargs)


class RateLimitExceeded(ApiError):
    """Raised on HTTP 429; retryable once reset_at has passed."""

    def __init__(self, message: str, reset_at: Optional[datetime] = None, **kwargs):
        kwargs['retryable'] = True
        kwargs.setdefault('status_code', 429)
        super().__init__(message, reset_at=reset_at, **kwargs)


class DataError(ProviderError):
    """Raised when a payload is malformed or a record cannot be mapped."""

    error_type = SyncErrorType.DATA


class InvalidTransitionError(MLSSyncException):
    """Raised when a sync run is moved along an edge the state machine forbids."""


class RunNotFoundError(MLSSyncException, KeyError):
    """Raised when a sync run id is unknown to the registry."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Sync run not found"
