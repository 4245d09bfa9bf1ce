"""Per-run registry of account stacks.

The StackRegistry hands out exactly one StackHandle per (account, region)
target. Resource steps add CloudFormation resources to a handle; the
upsert engine serializes mutations of a stack through the handle's lock.
"""

import json
import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

from ..accounts.directory import AccountDirectory
from ..core.errors import OrchestrationError
from .targets import Target


logger = logging.getLogger(__name__)


class StackState(Enum):
    PENDING = 'PENDING'
    CREATED = 'CREATED'
    MISSING = 'MISSING'


class DuplicateResourceError(OrchestrationError):
    """Raised when a logical id is added twice to the same stack."""

    kind = 'DuplicateResource'
    retry_safe = False


class StackHandle:
    """One deployment unit bound to exactly one target.

    Handles compare by identity; the registry guarantees a single handle
    per target, so holding ``lock`` serializes every mutation of the
    underlying stack.
    """

    def __init__(self, target: Target, name: str) -> None:
        self.target = target
        self.name = name
        self.state = StackState.PENDING
        self.stack_id: Optional[str] = None
        self.lock = threading.RLock()
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._outputs: Dict[str, Dict[str, Any]] = {}

    @property
    def account_key(self) -> str:
        return self.target.account_key

    @property
    def region(self) -> str:
        return self.target.region

    def add_resource(self, logical_id: str, resource: Dict[str, Any]) -> None:
        """Add a CloudFormation resource to the stack template.

        Raises:
            DuplicateResourceError: When the logical id is already used
        """
        if logical_id in self._resources:
            raise DuplicateResourceError(
                f"Resource {logical_id} already exists in stack {self.name}"
            )
        self._resources[logical_id] = resource

    def add_output(self, name: str, value: Any, description: Optional[str] = None) -> None:
        output: Dict[str, Any] = {'Value': value}
        if description:
            output['Description'] = description
        self._outputs[name] = output

    def has_resource(self, logical_id: str) -> bool:
        return logical_id in self._resources

    @property
    def is_empty(self) -> bool:
        return not self._resources

    def render_template(self) -> str:
        """Render the accumulated resources as a CloudFormation template body."""
        template: Dict[str, Any] = {
            'AWSTemplateFormatVersion': '2010-09-09',
            'Description': f"Landing zone stack for {self.target}",
            'Resources': self._resources,
        }
        if self._outputs:
            template['Outputs'] = self._outputs
        return json.dumps(template, indent=2, sort_keys=True)

    def __repr__(self) -> str:
        return f"StackHandle({self.name!r}, {self.target}, {self.state.value})"


class StackRegistry:
    """Lazily creates and caches one StackHandle per target."""

    def __init__(self, directory: AccountDirectory, home_region: str,
                 stack_name_prefix: str = 'LandingZone') -> None:
        """Initialize the registry.

        Args:
            directory: Account inventory for this run
            home_region: Region used when a region is omitted
            stack_name_prefix: Prefix of generated stack names
        """
        self.directory = directory
        self.home_region = home_region
        self.stack_name_prefix = stack_name_prefix
        self._handles: Dict[Target, StackHandle] = {}
        self._lock = threading.Lock()

    def _target(self, account_key: str, region: Optional[str]) -> Target:
        return Target(account_key=account_key, region=region or self.home_region)

    def stack_name(self, target: Target) -> str:
        return f"{self.stack_name_prefix}-{target.account_key}-{target.region}"

    def get_or_create(self, account_key: str, region: Optional[str] = None) -> StackHandle:
        """Get the handle for a target, creating it on first request.

        Args:
            account_key: Logical account key
            region: Region; defaults to the home region

        Returns:
            The single StackHandle for the target

        Raises:
            UnknownAccount: When the account is not in the directory
        """
        target = self._target(account_key, region)
        with self._lock:
            handle = self._handles.get(target)
            if handle is None:
                self.directory.get(account_key)
                handle = StackHandle(target, self.stack_name(target))
                self._handles[target] = handle
                logger.debug(f"Created stack handle {handle.name} for {target}")
            return handle

    def get_or_create_for(self, target: Target) -> StackHandle:
        return self.get_or_create(target.account_key, target.region)

    def try_get(self, account_key: str, region: Optional[str] = None) -> Optional[StackHandle]:
        """Get the handle for a target without creating one."""
        target = self._target(account_key, region)
        with self._lock:
            return self._handles.get(target)

    def try_get_or_create(self, account_key: str,
                          region: Optional[str] = None) -> Optional[StackHandle]:
        """Get or create a handle, or None when the account is unknown."""
        if account_key not in self.directory:
            return None
        return self.get_or_create(account_key, region)

    def handles(self) -> List[StackHandle]:
        """Get every handle in stable target order."""
        with self._lock:
            return [self._handles[target] for target in sorted(self._handles)]

    def __len__(self) -> int:
        return len(self._handles)
