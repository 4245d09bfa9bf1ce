"""Cross-account credential delegation.

The CredentialBroker exchanges an account id and role name for
short-lived STS credentials. A CredentialSource decides, once per
operation, whether a client should use the orchestrator's own identity or
a freshly assumed role in the target account.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from botocore.exceptions import ClientError

from .aws_client import AWSClientManager
from .errors import (
    AssumeRoleDenied,
    AssumeRoleExpired,
    OrchestrationError,
    Throttled,
    is_throttling_error,
)
from .retry import RetryPolicy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegatedCredentials:
    """Short-lived credential bundle for one account and role."""

    access_key: str
    secret_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiry: Optional[datetime] = None


class CredentialBroker:
    """Acquires delegated credentials through STS AssumeRole.

    Credentials are never cached; every call performs a new role
    assumption so long-running deployments cannot act on an expired
    session.
    """

    DEFAULT_SESSION_NAME = 'landing-zone-orchestrator'

    def __init__(self, aws_client: AWSClientManager,
                 retry_policy: Optional[RetryPolicy] = None,
                 session_name: str = DEFAULT_SESSION_NAME) -> None:
        """Initialize credential broker.

        Args:
            aws_client: AWS client manager for the orchestrator's own identity
            retry_policy: Retry policy for expired/throttled assumptions
            session_name: Role session name recorded in CloudTrail
        """
        self.aws_client = aws_client
        self.retry_policy = retry_policy or RetryPolicy()
        self.session_name = session_name

    def role_arn(self, account_id: str, role_name: str) -> str:
        partition = self.aws_client.get_partition()
        return f"arn:{partition}:iam::{account_id}:role/{role_name}"

    def acquire(self, account_id: str, role_name: str) -> DelegatedCredentials:
        """Assume a role in the given account.

        Args:
            account_id: Target AWS account ID
            role_name: Name of the role to assume in the target account

        Returns:
            DelegatedCredentials for the assumed role

        Raises:
            AssumeRoleDenied: When the trust policy rejects the caller
            AssumeRoleExpired: When the caller's session expired on every attempt
            Throttled: When STS kept throttling on every attempt
        """
        return self.retry_policy.run(
            lambda: self._assume_role(account_id, role_name),
            f"AssumeRole {role_name} in {account_id}",
        )

    def _assume_role(self, account_id: str, role_name: str) -> DelegatedCredentials:
        role_arn = self.role_arn(account_id, role_name)
        sts_client = self.aws_client.get_client('sts')
        try:
            response = sts_client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=self.session_name,
            )
        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error'].get('Message', str(e))

            if error_code in ('AccessDenied', 'AccessDeniedException'):
                raise AssumeRoleDenied(f"Not allowed to assume {role_arn}: {error_message}")
            elif error_code.startswith('ExpiredToken'):
                raise AssumeRoleExpired(f"Caller session expired assuming {role_arn}: {error_message}")
            elif is_throttling_error(error_code):
                raise Throttled(f"STS throttled assuming {role_arn}: {error_message}")
            else:
                raise OrchestrationError(f"Failed to assume {role_arn}: {error_message}")

        credentials = response['Credentials']
        logger.debug(f"Assumed {role_arn}, credentials expire at {credentials.get('Expiration')}")
        return DelegatedCredentials(
            access_key=credentials['AccessKeyId'],
            secret_key=credentials['SecretAccessKey'],
            session_token=credentials['SessionToken'],
            expiry=credentials.get('Expiration'),
        )


class CredentialSource(ABC):
    """Identity a client should act with."""

    @abstractmethod
    def client(self, service_name: str, region_name: Optional[str],
               aws_client: AWSClientManager, broker: CredentialBroker):
        """Build a client for a service acting with this identity."""


@dataclass(frozen=True)
class AmbientCredentials(CredentialSource):
    """The orchestrator's own identity."""

    def client(self, service_name, region_name, aws_client, broker):
        return aws_client.get_client(service_name, region_name)


@dataclass(frozen=True)
class DelegatedRole(CredentialSource):
    """A role assumed in another account."""

    account_id: str
    role_name: str

    def client(self, service_name, region_name, aws_client, broker):
        credentials = broker.acquire(self.account_id, self.role_name)
        return aws_client.get_delegated_client(service_name, region_name, credentials)


def credential_source_for(account_id: Optional[str], role_name: Optional[str],
                          own_account_id: Optional[str]) -> CredentialSource:
    """Pick the identity for acting in an account.

    Delegation only happens when both an account id and a role name are
    given and the account is not the orchestrator's own.

    Args:
        account_id: Target AWS account ID, if any
        role_name: Role to assume in the target account, if any
        own_account_id: The orchestrator's own account ID

    Returns:
        AmbientCredentials or DelegatedRole
    """
    if account_id and role_name and account_id != own_account_id:
        return DelegatedRole(account_id=account_id, role_name=role_name)
    return AmbientCredentials()
