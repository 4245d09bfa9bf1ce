"""Centralized AWS client management with session handling.

This module provides a centralized way to manage AWS clients across
different regions for the orchestrator's own identity, and to build
uncached clients bound to short-lived delegated credentials.
"""

import threading
from typing import TYPE_CHECKING, Dict, Optional
import boto3
from botocore.exceptions import (
    NoCredentialsError,
    ClientError,
    ProfileNotFound,
)

if TYPE_CHECKING:
    from .credentials import DelegatedCredentials


class AWSClientManager:
    """Centralized AWS client management with session handling.

    Clients for the ambient identity are cached per service and region.
    Clients bound to delegated credentials are never cached so an expired
    session cannot leak into a later operation. Session and client creation
    are serialized so worker threads can share one manager.
    """

    DEFAULT_REGION = "us-east-1"

    def __init__(self, profile_name: Optional[str] = None,
                 region_name: Optional[str] = None) -> None:
        """Initialize AWS client manager.

        Args:
            profile_name: Optional AWS profile name for credentials
            region_name: Optional default region overriding the session's

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, boto3.client] = {}
        self._profile_name = profile_name
        self._region_name = region_name
        self._account_id: Optional[str] = None
        self._lock = threading.RLock()
        self._validate_credentials()

    def _validate_credentials(self) -> None:
        """Validate AWS credentials are available and working.

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        try:
            session = self._get_session()
            sts_client = session.client("sts")
            identity = sts_client.get_caller_identity()
            self._account_id = identity["Account"]
        except NoCredentialsError:
            raise NoCredentialsError()
        except ProfileNotFound:
            raise ProfileNotFound(profile=self._profile_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidUserID.NotFound":
                raise NoCredentialsError(
                    "AWS credentials are invalid or expired. "
                    "Please update your credentials."
                )
            raise

    def _get_session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        with self._lock:
            if self._session is None:
                if self._profile_name:
                    self._session = boto3.Session(profile_name=self._profile_name)
                else:
                    self._session = boto3.Session()
            return self._session

    def get_client(self, service_name: str,
                   region_name: Optional[str] = None) -> boto3.client:
        """Get AWS service client for specified region.

        Args:
            service_name: AWS service name (e.g., 'cloudformation', 'sts')
            region_name: AWS region name; defaults to the current region

        Returns:
            Configured boto3 client for the service and region
        """
        region_name = region_name or self.get_current_region()
        client_key = f"{service_name}_{region_name}"

        # boto3 sessions are not thread-safe, so clients are built under the lock
        with self._lock:
            if client_key not in self._clients:
                session = self._get_session()
                self._clients[client_key] = session.client(
                    service_name, region_name=region_name
                )

            return self._clients[client_key]

    def get_delegated_client(self, service_name: str, region_name: Optional[str],
                             credentials: 'DelegatedCredentials') -> boto3.client:
        """Get an uncached client acting with delegated credentials.

        Args:
            service_name: AWS service name
            region_name: AWS region name; defaults to the current region
            credentials: Short-lived credentials from the credential broker

        Returns:
            boto3 client bound to the delegated identity
        """
        session = boto3.Session(
            aws_access_key_id=credentials.access_key,
            aws_secret_access_key=credentials.secret_key,
            aws_session_token=credentials.session_token,
        )
        return session.client(
            service_name, region_name=region_name or self.get_current_region()
        )

    def get_current_region(self) -> str:
        """Get current AWS region from session.

        Returns:
            Current AWS region name
        """
        if self._region_name:
            return self._region_name
        session = self._get_session()
        return session.region_name or self.DEFAULT_REGION

    def get_account_id(self) -> str:
        """Get current AWS account ID.

        Returns:
            Current AWS account ID

        Raises:
            ClientError: When unable to get account information
        """
        with self._lock:
            if self._account_id is None:
                sts_client = self.get_client("sts", self.get_current_region())
                response = sts_client.get_caller_identity()
                self._account_id = response["Account"]
            return self._account_id

    def get_partition(self) -> str:
        """Get the AWS partition of the current region."""
        region = self.get_current_region()
        if region.startswith("cn-"):
            return "aws-cn"
        if region.startswith("us-gov-"):
            return "aws-us-gov"
        return "aws"

    def clear_cache(self) -> None:
        """Clear cached clients to force recreation."""
        with self._lock:
            self._clients.clear()
