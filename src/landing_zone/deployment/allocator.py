"""Run-scoped deduplication of shared resource allocation."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .targets import Target


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRef:
    """Reference to a resource provisioned into a target's stack."""

    target: Target
    stack_name: str
    logical_id: str
    resource_kind: str


AllocationKey = Tuple[Target, str]


class SharedKeyAllocator:
    """Ensures a shareable resource kind is allocated once per target.

    Concurrent callers for the same (target, kind) are serialized on a
    per-key lock: the first runs ``allocate``, the others wait and reuse
    its result. A failed allocation records nothing, so a later caller
    tries again.
    """

    def __init__(self) -> None:
        self._records: Dict[AllocationKey, ResourceRef] = {}
        self._locks: Dict[AllocationKey, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: AllocationKey) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def ensure(self, target: Target, resource_kind: str,
               allocate: Callable[[], ResourceRef]) -> ResourceRef:
        """Get the target's resource of a kind, allocating it if needed.

        Args:
            target: Account and region the resource lives in
            resource_kind: Kind of shareable resource (e.g. 'ebs-key')
            allocate: Provisions the resource and returns its reference

        Returns:
            The single ResourceRef for (target, resource_kind)
        """
        key = (target, resource_kind)
        with self._lock_for(key):
            existing = self.get(target, resource_kind)
            if existing is not None:
                logger.info(f"{resource_kind} is already allocated in {target}")
                return existing

            ref = allocate()
            with self._guard:
                self._records[key] = ref
            logger.debug(f"Allocated {resource_kind} in {target}: {ref.logical_id}")
            return ref

    def get(self, target: Target, resource_kind: str) -> Optional[ResourceRef]:
        with self._guard:
            return self._records.get((target, resource_kind))

    def records(self, resource_kind: str) -> Dict[Target, ResourceRef]:
        """Get every allocation of a kind keyed by target."""
        with self._guard:
            return {
                target: ref
                for (target, kind), ref in self._records.items()
                if kind == resource_kind
            }
