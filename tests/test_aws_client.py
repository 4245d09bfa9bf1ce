"""Unit tests for AWS Client Manager."""

import threading
import time

import pytest
from unittest.mock import Mock, call, patch
from botocore.exceptions import NoCredentialsError, ProfileNotFound

from landing_zone.core.aws_client import AWSClientManager
from landing_zone.core.credentials import DelegatedCredentials


def session_with_identity(region_name="us-east-1"):
    mock_session = Mock()
    mock_session.region_name = region_name
    mock_sts_client = Mock()
    mock_sts_client.get_caller_identity.return_value = {
        "Account": "123456789012"
    }
    mock_session.client.return_value = mock_sts_client
    return mock_session, mock_sts_client


class TestAWSClientManager:
    """Test cases for AWSClientManager class."""

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_init_success(self, mock_session_class):
        """Test successful initialization."""
        mock_session, mock_sts_client = session_with_identity()
        mock_session_class.return_value = mock_session

        manager = AWSClientManager()

        assert manager._profile_name is None
        mock_sts_client.get_caller_identity.assert_called_once()

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_init_with_profile(self, mock_session_class):
        """Test initialization with profile."""
        mock_session, _ = session_with_identity()
        mock_session_class.return_value = mock_session

        manager = AWSClientManager(profile_name="test-profile")

        assert manager._profile_name == "test-profile"
        mock_session_class.assert_called_with(profile_name="test-profile")

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_init_no_credentials(self, mock_session_class):
        """Test initialization with no credentials."""
        mock_session, mock_sts_client = session_with_identity()
        mock_sts_client.get_caller_identity.side_effect = NoCredentialsError()
        mock_session_class.return_value = mock_session

        with pytest.raises(NoCredentialsError):
            AWSClientManager()

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_init_profile_not_found(self, mock_session_class):
        """Test initialization with invalid profile."""
        mock_session_class.side_effect = ProfileNotFound(profile="invalid")

        with pytest.raises(ProfileNotFound):
            AWSClientManager(profile_name="invalid")

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_client_caching(self, mock_session_class):
        """Test clients are cached per service and region."""
        mock_session, mock_sts_client = session_with_identity()
        mock_cfn_client = Mock()

        def client_side_effect(service_name, region_name=None):
            if service_name == "sts":
                return mock_sts_client
            return mock_cfn_client

        mock_session.client.side_effect = client_side_effect
        mock_session_class.return_value = mock_session

        manager = AWSClientManager()

        client1 = manager.get_client("cloudformation", "us-east-1")
        client2 = manager.get_client("cloudformation", "us-east-1")

        assert client1 is client2
        assert client1 is mock_cfn_client
        assert len(manager._clients) == 1

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_client_from_many_threads(self, mock_session_class):
        """Test concurrent callers share one client per service and region."""
        mock_session, mock_sts_client = session_with_identity()
        created = []

        def client_side_effect(service_name, region_name=None):
            if service_name == "sts":
                return mock_sts_client
            time.sleep(0.01)
            client = Mock()
            created.append(client)
            return client

        mock_session.client.side_effect = client_side_effect
        mock_session_class.return_value = mock_session
        manager = AWSClientManager()
        barrier = threading.Barrier(8)
        clients = []

        def worker():
            barrier.wait()
            clients.append(manager.get_client("cloudformation", "us-east-1"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(created) == 1
        assert all(client is created[0] for client in clients)
        assert len(clients) == 8

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_client_defaults_to_current_region(self, mock_session_class):
        """Test get_client without a region uses the current region."""
        mock_session, _ = session_with_identity(region_name="eu-west-1")
        mock_session_class.return_value = mock_session

        manager = AWSClientManager()
        manager.get_client("cloudformation")

        assert mock_session.client.call_args == call(
            "cloudformation", region_name="eu-west-1"
        )

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_current_region(self, mock_session_class):
        """Test getting current region."""
        mock_session, _ = session_with_identity(region_name="us-west-2")
        mock_session_class.return_value = mock_session

        manager = AWSClientManager()

        assert manager.get_current_region() == "us-west-2"

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_current_region_default(self, mock_session_class):
        """Test getting current region with default fallback."""
        mock_session, _ = session_with_identity(region_name=None)
        mock_session_class.return_value = mock_session

        manager = AWSClientManager()

        assert manager.get_current_region() == "us-east-1"

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_region_override(self, mock_session_class):
        """Test an explicit region wins over the session region."""
        mock_session, _ = session_with_identity(region_name="us-west-2")
        mock_session_class.return_value = mock_session

        manager = AWSClientManager(region_name="ap-southeast-2")

        assert manager.get_current_region() == "ap-southeast-2"

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_account_id(self, mock_session_class):
        """Test account ID comes from the validated caller identity."""
        mock_session, mock_sts_client = session_with_identity()
        mock_session_class.return_value = mock_session

        manager = AWSClientManager()

        assert manager.get_account_id() == "123456789012"
        mock_sts_client.get_caller_identity.assert_called_once()

    @pytest.mark.parametrize("region,partition", [
        ("us-east-1", "aws"),
        ("cn-north-1", "aws-cn"),
        ("us-gov-west-1", "aws-us-gov"),
    ])
    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_partition(self, mock_session_class, region, partition):
        """Test partition detection from the current region."""
        mock_session, _ = session_with_identity()
        mock_session_class.return_value = mock_session

        manager = AWSClientManager(region_name=region)

        assert manager.get_partition() == partition

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_get_delegated_client_is_not_cached(self, mock_session_class):
        """Test delegated clients use the given keys and bypass the cache."""
        mock_session, _ = session_with_identity()
        delegated_session = Mock()
        mock_session_class.side_effect = [mock_session, delegated_session, delegated_session]
        credentials = DelegatedCredentials("AKIA", "secret", "token")

        manager = AWSClientManager()
        manager.get_delegated_client("cloudformation", "eu-west-1", credentials)
        manager.get_delegated_client("cloudformation", "eu-west-1", credentials)

        mock_session_class.assert_called_with(
            aws_access_key_id="AKIA",
            aws_secret_access_key="secret",
            aws_session_token="token",
        )
        assert delegated_session.client.call_count == 2
        delegated_session.client.assert_called_with(
            "cloudformation", region_name="eu-west-1"
        )
        assert len(manager._clients) == 0

    @patch("landing_zone.core.aws_client.boto3.Session")
    def test_clear_cache(self, mock_session_class):
        """Test clearing client cache."""
        mock_session, _ = session_with_identity()
        mock_session_class.return_value = mock_session

        manager = AWSClientManager()

        manager.get_client("cloudformation", "us-east-1")
        assert len(manager._clients) == 1

        manager.clear_cache()
        assert len(manager._clients) == 0
