"""Target resolution and stack lifecycle orchestration."""

from .allocator import ResourceRef, SharedKeyAllocator
from .orchestrator import BatchReport, DeploymentOrchestrator, TargetFailure
from .registry import StackHandle, StackRegistry, StackState
from .sharing import vpc_shared_account_keys
from .targets import (
    AccountSet,
    AllAccounts,
    Exclusion,
    OwnershipRule,
    ResolvedTargets,
    SharedVia,
    SingleAccount,
    Target,
    TargetResolver,
)
from .templates import TemplateLocation, TemplateStore
from .upsert import StackUpsertEngine, UpsertOutcome, UpsertRequest, UpsertResult

__all__ = [
    'AccountSet',
    'AllAccounts',
    'BatchReport',
    'DeploymentOrchestrator',
    'Exclusion',
    'OwnershipRule',
    'ResolvedTargets',
    'ResourceRef',
    'SharedKeyAllocator',
    'SharedVia',
    'SingleAccount',
    'StackHandle',
    'StackRegistry',
    'StackState',
    'StackUpsertEngine',
    'Target',
    'TargetFailure',
    'TargetResolver',
    'TemplateLocation',
    'TemplateStore',
    'UpsertOutcome',
    'UpsertRequest',
    'UpsertResult',
    'vpc_shared_account_keys',
]
