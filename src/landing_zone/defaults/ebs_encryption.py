"""Default EBS encryption keys for every account and region with a VPC.

A VPC owner and every account its subnets are shared to need an EBS
default encryption key in the VPC's region. Several VPCs can reach the
same account and region, so keys are allocated through the
SharedKeyAllocator and each target receives exactly one key.

CloudFormation has no resource for the account-level EBS default
encryption setting. Once the key stacks are deployed,
enable_default_ebs_encryption points the setting at each key through the
EC2 API, acting in the target account like the upsert engine does.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from botocore.exceptions import ClientError

from ..accounts.directory import AccountDirectory
from ..core.aws_client import AWSClientManager
from ..core.config import VpcConfigEntry
from ..core.credentials import CredentialBroker, credential_source_for
from ..core.errors import OrchestrationError, UnknownAccount
from ..deployment.allocator import ResourceRef, SharedKeyAllocator
from ..deployment.orchestrator import BatchReport, TargetFailure
from ..deployment.registry import StackHandle, StackRegistry
from ..deployment.sharing import vpc_shared_account_keys
from ..deployment.targets import AccountSet, SharedVia, TargetResolver


logger = logging.getLogger(__name__)

RESOURCE_KIND = 'ebs-key'
KEY_LOGICAL_ID = 'EbsDefaultEncryptionKey'
ALIAS_LOGICAL_ID = 'EbsDefaultEncryptionKeyAlias'


@dataclass
class EbsKeyStepResult:
    keys: Dict[str, Dict[str, ResourceRef]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def key_alias(alias_prefix: str) -> str:
    return f"alias/{alias_prefix}-EBS-Key"


def add_ebs_encryption_key(handle: StackHandle, alias_prefix: str) -> ResourceRef:
    """Add the EBS default encryption key and its alias to a stack.

    Args:
        handle: Stack of the target account and region
        alias_prefix: Prefix of the key alias

    Returns:
        ResourceRef to the key
    """
    handle.add_resource(KEY_LOGICAL_ID, {
        'Type': 'AWS::KMS::Key',
        'Properties': {
            'Description': 'Key used to encrypt/decrypt EBS by default',
            'EnableKeyRotation': True,
            'KeyPolicy': {
                'Version': '2012-10-17',
                'Statement': [{
                    'Effect': 'Allow',
                    'Principal': {'AWS': {'Fn::Sub': 'arn:${AWS::Partition}:iam::${AWS::AccountId}:root'}},
                    'Action': 'kms:*',
                    'Resource': '*',
                }],
            },
        },
    })
    handle.add_resource(ALIAS_LOGICAL_ID, {
        'Type': 'AWS::KMS::Alias',
        'Properties': {
            'AliasName': key_alias(alias_prefix),
            'TargetKeyId': {'Ref': KEY_LOGICAL_ID},
        },
    })
    handle.add_output(
        'EbsEncryptionKeyArn',
        {'Fn::GetAtt': [KEY_LOGICAL_ID, 'Arn']},
        'EBS default encryption key',
    )
    return ResourceRef(
        target=handle.target,
        stack_name=handle.name,
        logical_id=KEY_LOGICAL_ID,
        resource_kind=RESOURCE_KIND,
    )


def create_default_ebs_encryption_keys(vpc_configs: Sequence[VpcConfigEntry],
                                       directory: AccountDirectory,
                                       resolver: TargetResolver,
                                       registry: StackRegistry,
                                       allocator: SharedKeyAllocator,
                                       alias_prefix: str = 'LandingZone') -> EbsKeyStepResult:
    """Create one EBS default encryption key per account and region with a VPC.

    Args:
        vpc_configs: VPC definitions with owning account and OU
        directory: Account inventory for this run
        resolver: Target resolver
        registry: Stack registry receiving the key resources
        allocator: Deduplicates keys across VPCs sharing to the same account
        alias_prefix: Prefix of the key alias

    Returns:
        EbsKeyStepResult mapping account key and region to the key, plus
        warnings for accounts that were skipped
    """
    result = EbsKeyStepResult()

    for entry in vpc_configs:
        vpc_name = entry.vpc_config.get('name')

        def known_shared_accounts(accounts, vpc_config, ou_key):
            keys = vpc_shared_account_keys(accounts, vpc_config, ou_key)
            unknown = [key for key in keys if key not in directory]
            for key in unknown:
                message = f"Cannot find account {key} that VPC {vpc_name} is shared to"
                logger.warning(message)
                result.warnings.append(message)
            return [key for key in keys if key in directory]

        regions = (entry.region,) if entry.region else ()
        if entry.account_key in directory:
            rule = SharedVia(
                entry.account_key,
                known_shared_accounts,
                entry.vpc_config,
                entry.ou_key,
                regions=regions,
            )
        else:
            # The owner is skipped; accounts the VPC is shared to still get keys
            message = f"Cannot find account {entry.account_key} that owns VPC {vpc_name}"
            logger.warning(message)
            result.warnings.append(message)
            consumers = known_shared_accounts(directory.accounts, entry.vpc_config, entry.ou_key)
            rule = AccountSet(tuple(consumers), regions=regions)

        try:
            targets = resolver.resolve(rule, directory)
        except UnknownAccount as e:
            message = f"Cannot create EBS keys for VPC {vpc_name}: {e}"
            logger.warning(message)
            result.warnings.append(message)
            continue

        for target in targets:
            handle = registry.try_get_or_create(target.account_key, target.region)
            if handle is None:
                message = f"Cannot find account stack {target.account_key}"
                logger.warning(message)
                result.warnings.append(message)
                continue

            ref = allocator.ensure(
                target,
                RESOURCE_KIND,
                lambda handle=handle: add_ebs_encryption_key(handle, alias_prefix),
            )
            result.keys.setdefault(target.account_key, {})[target.region] = ref

    return result


def enable_default_ebs_encryption(report: BatchReport,
                                  step: EbsKeyStepResult,
                                  directory: AccountDirectory,
                                  aws_client: AWSClientManager,
                                  broker: CredentialBroker,
                                  role_name: Optional[str] = None,
                                  alias_prefix: str = 'LandingZone') -> None:
    """Make each deployed key the account's EBS default encryption key.

    Only targets whose key stack deployed successfully are touched. A
    target that cannot be configured is moved from the report's successes
    to its failures so the other targets are still configured.

    Args:
        report: Report of the key stack deployment, updated in place
        step: Keys allocated by create_default_ebs_encryption_keys
        directory: Account inventory for this run
        aws_client: AWS client manager for the orchestrator's identity
        broker: Credential broker for foreign accounts
        role_name: Role assumed in accounts other than the orchestrator's
        alias_prefix: Prefix of the key alias
    """
    own_account_id = aws_client.get_account_id()

    for result in list(report.successes):
        target = result.target
        if target.region not in step.keys.get(target.account_key, {}):
            continue

        account = directory.get(target.account_key)
        source = credential_source_for(account.id, role_name, own_account_id)
        try:
            ec2_client = source.client('ec2', target.region, aws_client, broker)
            ec2_client.modify_ebs_default_kms_key_id(KmsKeyId=key_alias(alias_prefix))
            ec2_client.enable_ebs_encryption_by_default()
        except OrchestrationError as e:
            failure = TargetFailure(target, e.kind, str(e), e.retry_safe)
        except ClientError as e:
            failure = TargetFailure(target, 'AWSError', str(e), True)
        else:
            logger.info(f"Enabled EBS default encryption in {target}")
            continue

        logger.error(f"Enabling EBS default encryption in {target} failed: {failure.message}")
        report.successes.remove(result)
        report.failures.append(failure)
