"""Error taxonomy for landing zone orchestration.

Every failure the orchestration layer reports derives from
OrchestrationError. Each class carries a stable ``kind`` used in batch
reports, whether it is transient (retried automatically with backoff) and
whether re-running the whole deployment is safe once it has been reported.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base exception for orchestration operations."""

    kind = 'OrchestrationError'
    transient = False
    retry_safe = True


class ConfigurationError(OrchestrationError):
    """Raised when configuration is invalid or missing."""

    kind = 'ConfigurationError'
    retry_safe = False


class AccountDirectoryError(OrchestrationError):
    """Raised when the account inventory cannot be loaded."""

    kind = 'AccountDirectoryError'


class UnknownAccount(OrchestrationError):
    """Raised when a rule references an account missing from the directory."""

    kind = 'UnknownAccount'
    retry_safe = False

    def __init__(self, account_key: str, message: Optional[str] = None) -> None:
        self.account_key = account_key
        super().__init__(message or f"Unknown account: {account_key}")


class TemplateNotFound(OrchestrationError):
    """Raised when a stack template cannot be resolved."""

    kind = 'TemplateNotFound'
    retry_safe = False


class AssumeRoleDenied(OrchestrationError):
    """Raised when the target account's trust policy rejects the caller."""

    kind = 'AssumeRoleDenied'
    retry_safe = False


class TransientError(OrchestrationError):
    """Base class for conditions that clear up on their own."""

    transient = True


class AssumeRoleExpired(TransientError):
    """Raised when the caller's own session expired during role assumption."""

    kind = 'AssumeRoleExpired'


class Throttled(TransientError):
    """Raised when an AWS API rejects the call because of rate limits."""

    kind = 'Throttled'


class ConcurrentUpsertConflict(TransientError):
    """Raised when another mutation is already in flight on the stack."""

    kind = 'ConcurrentUpsertConflict'


class UpsertTimedOut(OrchestrationError):
    """Raised when a stack does not reach a terminal state in time."""

    kind = 'UpsertTimedOut'


class UpsertFailed(OrchestrationError):
    """Raised when CloudFormation reports a failed create or update."""

    kind = 'UpsertFailed'


THROTTLING_ERROR_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'RequestThrottled',
})


def is_throttling_error(error_code: str) -> bool:
    """Check whether an AWS error code signals rate limiting."""
    return error_code in THROTTLING_ERROR_CODES
