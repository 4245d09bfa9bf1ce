"""Idempotent create-or-update of CloudFormation stacks.

This module provides the StackUpsertEngine, which converges one stack in
one account and region to a given template and parameter set. Missing
stacks are created, existing stacks are updated in place, and an update
CloudFormation reports as a no-op is a successful "unchanged" outcome.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.credentials import CredentialBroker, credential_source_for
from ..core.errors import (
    ConcurrentUpsertConflict,
    Throttled,
    UpsertFailed,
    UpsertTimedOut,
    is_throttling_error,
)
from ..core.retry import RetryPolicy
from .registry import StackRegistry, StackState
from .targets import Exclusion, Target
from .templates import TemplateLocation, TemplateStore


logger = logging.getLogger(__name__)


class UpsertOutcome(Enum):
    CREATED = 'Created'
    UPDATED = 'Updated'
    UNCHANGED = 'Unchanged'
    SKIPPED = 'Skipped'


@dataclass(frozen=True)
class UpsertRequest:
    """Desired state of one stack at one target."""

    target: Target
    stack_name: str
    template: TemplateLocation
    parameters: Mapping[str, str] = field(default_factory=dict)
    capabilities: FrozenSet[str] = frozenset()
    account_id: Optional[str] = None
    role_name: Optional[str] = None
    exclusion: Exclusion = Exclusion()

    def __post_init__(self) -> None:
        object.__setattr__(self, 'parameters', dict(self.parameters or {}))
        object.__setattr__(self, 'capabilities', frozenset(self.capabilities or ()))


@dataclass(frozen=True)
class UpsertResult:
    target: Target
    stack_id: Optional[str]
    outcome: UpsertOutcome


def to_cloudformation_parameters(parameters: Mapping[str, str]) -> List[Dict[str, str]]:
    """Convert a parameter mapping to CloudFormation's list form, sorted by key."""
    return [
        {'ParameterKey': key, 'ParameterValue': str(value)}
        for key, value in sorted(parameters.items())
    ]


class StackUpsertEngine:
    """Creates or updates stacks in any account and region.

    Mutations of one stack are serialized: through the registry handle's
    lock when a registry is attached, otherwise through a lock the engine
    keeps per target and stack name.
    """

    # Message CloudFormation returns for an update with nothing to change
    NO_UPDATES_MESSAGE = 'No updates are to be performed'

    SUCCESS_STATUSES = frozenset({'CREATE_COMPLETE', 'UPDATE_COMPLETE', 'IMPORT_COMPLETE'})

    FAILED_STATUSES = frozenset({
        'CREATE_FAILED',
        'ROLLBACK_COMPLETE',
        'ROLLBACK_FAILED',
        'DELETE_FAILED',
        'UPDATE_FAILED',
        'UPDATE_ROLLBACK_COMPLETE',
        'UPDATE_ROLLBACK_FAILED',
        'IMPORT_ROLLBACK_COMPLETE',
        'IMPORT_ROLLBACK_FAILED',
    })

    # Failed first creates end here and can only be deleted
    RECREATE_STATUSES = frozenset({'ROLLBACK_COMPLETE'})

    DEFAULT_TIMEOUT_SECONDS = 3600
    DEFAULT_POLL_INTERVAL_SECONDS = 15

    def __init__(self, aws_client: AWSClientManager,
                 broker: CredentialBroker,
                 template_store: TemplateStore,
                 registry: Optional[StackRegistry] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
                 poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the upsert engine.

        Args:
            aws_client: AWS client manager for the orchestrator's identity
            broker: Credential broker for foreign accounts
            template_store: Resolves template locations to bodies
            registry: Optional stack registry providing per-target handles
            retry_policy: Retry policy for transient failures
            timeout_seconds: Maximum wait for a stack to reach a terminal state
            poll_interval_seconds: Delay between stack status checks
            sleep: Sleep function used while polling
            clock: Monotonic clock used for the timeout
        """
        self.aws_client = aws_client
        self.broker = broker
        self.template_store = template_store
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock
        self._locks: Dict[Tuple[Target, str], threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def is_excluded(self, request: UpsertRequest) -> bool:
        return request.exclusion.matches(
            (request.account_id, request.target.account_key), request.target.region
        )

    def upsert(self, request: UpsertRequest) -> UpsertResult:
        """Create or update the requested stack.

        Args:
            request: Desired stack state and target

        Returns:
            UpsertResult with the stack id and outcome

        Raises:
            TemplateNotFound: When the template cannot be resolved
            AssumeRoleDenied: When the target account rejects delegation
            UpsertTimedOut: When the stack does not settle in time
            UpsertFailed: When CloudFormation reports a failure
            TransientError: When retries for a transient failure are exhausted
        """
        target = request.target
        if self.is_excluded(request):
            logger.info(f"Skipping stack {request.stack_name} in excluded target {target}")
            return UpsertResult(target=target, stack_id=None, outcome=UpsertOutcome.SKIPPED)

        template_body = self.template_store.resolve(request.template)

        handle = None
        if self.registry is not None:
            handle = self.registry.try_get_or_create(target.account_key, target.region)
        lock = handle.lock if handle is not None else self._lock_for(target, request.stack_name)

        with lock:
            # Credentials are acquired only once this upsert owns the stack
            cfn_client = self._cloudformation_client(request)
            try:
                result = self.retry_policy.run(
                    lambda: self._submit(cfn_client, request, template_body),
                    f"Upsert of {request.stack_name} in {target}",
                )
                if result.outcome is not UpsertOutcome.UNCHANGED:
                    self._wait_for_stack(cfn_client, result.stack_id, request, self.SUCCESS_STATUSES)
            except Exception:
                if handle is not None and handle.state is StackState.PENDING:
                    handle.state = StackState.MISSING
                raise

            if handle is not None:
                handle.state = StackState.CREATED
                handle.stack_id = result.stack_id

        logger.info(f"Stack {request.stack_name} in {target}: {result.outcome.value}")
        return result

    def _lock_for(self, target: Target, stack_name: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault((target, stack_name), threading.RLock())

    def _cloudformation_client(self, request: UpsertRequest):
        own_account_id = None
        if request.account_id and request.role_name:
            own_account_id = self.aws_client.get_account_id()
        source = credential_source_for(request.account_id, request.role_name, own_account_id)
        return source.client('cloudformation', request.target.region, self.aws_client, self.broker)

    def _submit(self, cfn_client, request: UpsertRequest,
                template_body: str) -> UpsertResult:
        """Submit a create or update without waiting for it to settle.

        This is the unit the retry policy repeats, so it must not be
        re-entered once CloudFormation has accepted a mutation.
        """
        stack = self._describe_stack(cfn_client, request.stack_name)

        if stack is None:
            return self._create_stack(cfn_client, request, template_body)

        status = stack['StackStatus']
        if status.endswith('_IN_PROGRESS'):
            raise ConcurrentUpsertConflict(
                f"Stack {request.stack_name} in {request.target} is {status}"
            )

        if status in self.RECREATE_STATUSES:
            logger.warning(
                f"Stack {request.stack_name} in {request.target} is {status}, "
                "deleting it before creating it again"
            )
            self._delete_stack(cfn_client, stack['StackId'])
            return self._create_stack(cfn_client, request, template_body)

        return self._update_stack(cfn_client, request, template_body, stack['StackId'])

    def _stack_arguments(self, request: UpsertRequest, template_body: str) -> Dict[str, Any]:
        return {
            'StackName': request.stack_name,
            'TemplateBody': template_body,
            'Parameters': to_cloudformation_parameters(request.parameters),
            'Capabilities': sorted(request.capabilities),
        }

    def _create_stack(self, cfn_client, request: UpsertRequest,
                      template_body: str) -> UpsertResult:
        logger.info(f"Creating stack {request.stack_name} in {request.target}")
        try:
            response = cfn_client.create_stack(**self._stack_arguments(request, template_body))
        except ClientError as e:
            raise self._translate_error(e, request)

        stack_id = response['StackId']
        return UpsertResult(target=request.target, stack_id=stack_id, outcome=UpsertOutcome.CREATED)

    def _update_stack(self, cfn_client, request: UpsertRequest,
                      template_body: str, stack_id: str) -> UpsertResult:
        logger.info(f"Updating stack {request.stack_name} in {request.target}")
        try:
            response = cfn_client.update_stack(**self._stack_arguments(request, template_body))
        except ClientError as e:
            if self.NO_UPDATES_MESSAGE in e.response['Error'].get('Message', ''):
                logger.info(f"No changes to stack {request.stack_name} in {request.target}")
                return UpsertResult(
                    target=request.target, stack_id=stack_id, outcome=UpsertOutcome.UNCHANGED
                )
            raise self._translate_error(e, request)

        stack_id = response.get('StackId', stack_id)
        return UpsertResult(target=request.target, stack_id=stack_id, outcome=UpsertOutcome.UPDATED)

    def _delete_stack(self, cfn_client, stack_id: str) -> None:
        cfn_client.delete_stack(StackName=stack_id)
        deadline = self._clock() + self.timeout_seconds
        while True:
            try:
                stack = self._describe_stack(cfn_client, stack_id)
            except Throttled as e:
                logger.warning(f"{e}, polling again")
            else:
                if stack is None or stack['StackStatus'] == 'DELETE_COMPLETE':
                    return
                if stack['StackStatus'] == 'DELETE_FAILED':
                    raise UpsertFailed(
                        f"Unable to delete stack {stack_id}: "
                        f"{stack.get('StackStatusReason', 'unknown reason')}"
                    )
            if self._clock() >= deadline:
                raise UpsertTimedOut(f"Timed out deleting stack {stack_id}")
            self._sleep(self.poll_interval_seconds)

    def _describe_stack(self, cfn_client, stack_name: str) -> Optional[Dict[str, Any]]:
        """Describe a stack, or None when it does not exist."""
        try:
            response = cfn_client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            error = e.response['Error']
            if error.get('Code') == 'ValidationError' and 'does not exist' in error.get('Message', ''):
                return None
            if is_throttling_error(error.get('Code', '')):
                raise Throttled(f"Throttled describing stack {stack_name}: {error.get('Message')}")
            raise UpsertFailed(f"Failed to describe stack {stack_name}: {error.get('Message')}")

        stacks = response.get('Stacks', [])
        if not stacks:
            return None
        return stacks[0]

    def _wait_for_stack(self, cfn_client, stack_id: str, request: UpsertRequest,
                        success_statuses: FrozenSet[str]) -> None:
        """Poll a stack until it reaches a terminal state.

        Throttled status checks are polled again until the timeout. The
        mutation has already been accepted, so it is never resubmitted.

        Raises:
            UpsertFailed: When the stack ends in a failed state
            UpsertTimedOut: When the stack is still in progress after the timeout
        """
        start_time = self._clock()
        status = 'unknown'

        while True:
            try:
                stack = self._describe_stack(cfn_client, stack_id)
            except Throttled as e:
                logger.warning(f"{e}, polling again")
            else:
                if stack is None:
                    raise UpsertFailed(f"Stack {request.stack_name} in {request.target} disappeared")

                status = stack['StackStatus']
                if status in success_statuses:
                    return
                if status in self.FAILED_STATUSES or status == 'DELETE_COMPLETE':
                    reason = stack.get('StackStatusReason', 'unknown reason')
                    raise UpsertFailed(
                        f"Stack {request.stack_name} in {request.target} ended in {status}: {reason}"
                    )

            elapsed = self._clock() - start_time
            if elapsed >= self.timeout_seconds:
                raise UpsertTimedOut(
                    f"Stack {request.stack_name} in {request.target} still {status} "
                    f"after {int(elapsed)} seconds"
                )

            logger.debug(f"Stack {request.stack_name} in {request.target} is {status}")
            self._sleep(self.poll_interval_seconds)

    def _translate_error(self, error: ClientError, request: UpsertRequest) -> Exception:
        error_code = error.response['Error'].get('Code', '')
        error_message = error.response['Error'].get('Message', str(error))

        if is_throttling_error(error_code):
            return Throttled(f"Throttled upserting {request.stack_name}: {error_message}")
        elif error_code in ('AlreadyExistsException', 'OperationInProgressException') \
                or '_IN_PROGRESS state' in error_message:
            return ConcurrentUpsertConflict(
                f"Stack {request.stack_name} in {request.target} is being modified: {error_message}"
            )
        else:
            return UpsertFailed(
                f"Failed to upsert stack {request.stack_name} in {request.target}: {error_message}"
            )
