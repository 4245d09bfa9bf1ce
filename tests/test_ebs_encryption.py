"""Tests for the default EBS encryption key step."""

import json

import pytest
from unittest.mock import Mock

from landing_zone.core.config import VpcConfigEntry
from landing_zone.defaults.ebs_encryption import (
    ALIAS_LOGICAL_ID,
    KEY_LOGICAL_ID,
    create_default_ebs_encryption_keys,
    enable_default_ebs_encryption,
)
from landing_zone.deployment.allocator import SharedKeyAllocator
from landing_zone.deployment.orchestrator import BatchReport
from landing_zone.deployment.registry import StackRegistry
from landing_zone.deployment.targets import Target, TargetResolver
from landing_zone.deployment.upsert import UpsertOutcome, UpsertResult

from conftest import client_error


def vpc(account_key, name, shared_to=(), region='us-east-1', ou_key=None, share_to_ou=False):
    subnet = {'name': 'App', 'share-to-specific-accounts': list(shared_to)}
    if share_to_ou:
        subnet['share-to-ou-accounts'] = True
    config = {'name': name, 'subnets': [subnet]}
    if region:
        config['region'] = region
    return VpcConfigEntry(account_key=account_key, ou_key=ou_key, vpc_config=config)


@pytest.fixture
def registry(directory):
    return StackRegistry(directory, 'us-east-1')


@pytest.fixture
def allocator():
    return SharedKeyAllocator()


def run_step(vpcs, directory, registry, allocator):
    return create_default_ebs_encryption_keys(
        vpcs, directory, TargetResolver('us-east-1'), registry, allocator, alias_prefix='PBMM'
    )


class TestCreateDefaultEbsEncryptionKeys:
    """Test EBS key allocation across VPC owners and consumers."""

    def test_owner_and_consumers_get_keys(self, directory, registry, allocator):
        result = run_step([vpc('shared', 'Central', ['workload'])], directory, registry, allocator)

        assert set(result.keys) == {'shared', 'workload'}
        assert result.keys['workload']['us-east-1'].logical_id == KEY_LOGICAL_ID
        assert result.warnings == []

        template = json.loads(registry.try_get('workload', 'us-east-1').render_template())
        alias = template['Resources'][ALIAS_LOGICAL_ID]
        assert alias['Properties']['AliasName'] == 'alias/PBMM-EBS-Key'
        assert template['Resources'][KEY_LOGICAL_ID]['Type'] == 'AWS::KMS::Key'

    def test_overlapping_vpcs_allocate_one_key(self, directory, registry, allocator):
        """Test an account reached by two VPCs receives a single key."""
        result = run_step(
            [vpc('shared', 'Central', ['workload']), vpc('ops', 'Ops', ['workload'])],
            directory, registry, allocator,
        )

        assert set(result.keys) == {'ops', 'shared', 'workload'}
        assert set(allocator.records('ebs-key')) == {
            Target('ops', 'us-east-1'),
            Target('shared', 'us-east-1'),
            Target('workload', 'us-east-1'),
        }
        assert len(registry) == 3

    def test_regions_are_allocated_separately(self, directory, registry, allocator):
        result = run_step(
            [vpc('shared', 'East', ['workload']), vpc('shared', 'West', ['workload'], region='us-west-2')],
            directory, registry, allocator,
        )

        assert set(result.keys['workload']) == {'us-east-1', 'us-west-2'}

    def test_vpc_without_region_uses_home_region(self, directory, registry, allocator):
        result = run_step([vpc('ops', 'Ops', region=None)], directory, registry, allocator)

        assert list(result.keys['ops']) == ['us-east-1']

    def test_ou_sharing(self, directory, registry, allocator):
        result = run_step(
            [vpc('shared', 'Central', ou_key='core', share_to_ou=True)],
            directory, registry, allocator,
        )

        assert set(result.keys) == {'ops', 'shared'}

    def test_unknown_consumer_is_warned_and_skipped(self, directory, registry, allocator):
        result = run_step([vpc('shared', 'Central', ['ghost', 'workload'])], directory, registry, allocator)

        assert set(result.keys) == {'shared', 'workload'}
        assert result.warnings == ['Cannot find account ghost that VPC Central is shared to']

    def test_unknown_owner_still_covers_consumers(self, directory, registry, allocator):
        """Test only the missing owner is skipped, not the accounts it shares to."""
        result = run_step(
            [vpc('ghost', 'Orphan', ['workload']), vpc('ops', 'Ops')],
            directory, registry, allocator,
        )

        assert set(result.keys) == {'ops', 'workload'}
        assert result.warnings == ['Cannot find account ghost that owns VPC Orphan']
        assert registry.try_get('ghost', 'us-east-1') is None

    def test_unknown_owner_and_consumer_are_both_warned(self, directory, registry, allocator):
        result = run_step([vpc('ghost', 'Orphan', ['phantom'])], directory, registry, allocator)

        assert result.keys == {}
        assert result.warnings == [
            'Cannot find account ghost that owns VPC Orphan',
            'Cannot find account phantom that VPC Orphan is shared to',
        ]


def deployed(*targets):
    return BatchReport(successes=[
        UpsertResult(target=target, stack_id=f"arn:stack/{target.key}", outcome=UpsertOutcome.CREATED)
        for target in targets
    ])


class TestEnableDefaultEbsEncryption:
    """Test the account-level default encryption setting."""

    def test_points_each_deployed_target_at_its_key(self, directory, registry, allocator,
                                                    mock_aws_client, mock_broker):
        step = run_step([vpc('shared', 'Central', ['workload'])], directory, registry, allocator)
        report = deployed(Target('shared', 'us-east-1'), Target('workload', 'us-east-1'))
        ec2_client = Mock()
        mock_aws_client.get_delegated_client.return_value = ec2_client

        enable_default_ebs_encryption(
            report, step, directory, mock_aws_client, mock_broker,
            role_name='PipelineRole', alias_prefix='PBMM',
        )

        assert report.ok
        assert ec2_client.enable_ebs_encryption_by_default.call_count == 2
        ec2_client.modify_ebs_default_kms_key_id.assert_called_with(KmsKeyId='alias/PBMM-EBS-Key')
        assert sorted(c.args for c in mock_broker.acquire.call_args_list) == [
            ('222222222222', 'PipelineRole'),
            ('333333333333', 'PipelineRole'),
        ]

    def test_own_account_uses_ambient_identity(self, directory, registry, allocator,
                                               mock_aws_client, mock_broker):
        step = run_step([vpc('ops', 'Ops')], directory, registry, allocator)
        report = deployed(Target('ops', 'us-east-1'))
        ec2_client = Mock()
        mock_aws_client.get_client.return_value = ec2_client

        enable_default_ebs_encryption(
            report, step, directory, mock_aws_client, mock_broker, role_name='PipelineRole',
        )

        mock_aws_client.get_client.assert_called_with('ec2', 'us-east-1')
        ec2_client.enable_ebs_encryption_by_default.assert_called_once_with()
        mock_broker.acquire.assert_not_called()

    def test_failed_target_moves_to_failures(self, directory, registry, allocator,
                                             mock_aws_client, mock_broker):
        """Test one account rejecting the setting does not stop the others."""
        step = run_step([vpc('shared', 'Central', ['workload'])], directory, registry, allocator)
        report = deployed(Target('shared', 'us-east-1'), Target('workload', 'us-east-1'))
        ec2_client = Mock()
        ec2_client.enable_ebs_encryption_by_default.side_effect = [
            client_error('UnauthorizedOperation', 'not allowed', 'EnableEbsEncryptionByDefault'),
            {'EbsEncryptionByDefault': True},
        ]
        mock_aws_client.get_delegated_client.return_value = ec2_client

        enable_default_ebs_encryption(
            report, step, directory, mock_aws_client, mock_broker, role_name='PipelineRole',
        )

        assert [r.target for r in report.successes] == [Target('workload', 'us-east-1')]
        assert len(report.failures) == 1
        assert report.failures[0].target == Target('shared', 'us-east-1')
        assert report.failures[0].error_kind == 'AWSError'
        assert 'not allowed' in report.failures[0].message

    def test_targets_without_keys_are_left_alone(self, directory, registry, allocator,
                                                 mock_aws_client, mock_broker):
        step = run_step([vpc('ops', 'Ops')], directory, registry, allocator)
        report = deployed(Target('workload', 'eu-west-1'))

        enable_default_ebs_encryption(report, step, directory, mock_aws_client, mock_broker)

        mock_aws_client.get_client.assert_not_called()
        mock_aws_client.get_delegated_client.assert_not_called()
        assert report.ok
