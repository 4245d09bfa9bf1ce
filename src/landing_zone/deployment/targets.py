"""Deployment target resolution.

Ownership rules describe which accounts must receive a resource. The
TargetResolver expands a rule against the AccountDirectory into a
deduplicated set of (account key, region) targets, applying an optional
exclusion predicate.
"""

import logging
from dataclasses import dataclass, field
from typing import (
    Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple,
)

from ..accounts.directory import Account, AccountDirectory


logger = logging.getLogger(__name__)

SharingPredicate = Callable[[Sequence[Account], Optional[Dict[str, Any]], Optional[str]], List[str]]
ExclusionPredicate = Callable[[str, str], bool]


@dataclass(frozen=True, order=True)
class Target:
    """The (account, region) address of one stack."""

    account_key: str
    region: str

    @property
    def key(self) -> str:
        return f"{self.account_key}/{self.region}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class OwnershipRule:
    """Base class for the closed set of ownership rules."""

    regions: Tuple[str, ...] = field(default=(), kw_only=True)


@dataclass(frozen=True)
class SingleAccount(OwnershipRule):
    account_key: str


@dataclass(frozen=True)
class AccountSet(OwnershipRule):
    account_keys: Tuple[str, ...]


@dataclass(frozen=True)
class AllAccounts(OwnershipRule):
    pass


@dataclass(frozen=True)
class SharedVia(OwnershipRule):
    """The base account plus every account a resource is shared to."""

    base_account_key: str
    sharing: SharingPredicate = field(compare=False)
    resource_config: Optional[Dict[str, Any]] = field(default=None, compare=False)
    ou_key: Optional[str] = None


@dataclass(frozen=True)
class Exclusion:
    """An "everywhere except" filter on account and optionally region.

    A pair is excluded only when the account matches and either no
    region constraint is given or the region matches too. A region
    constraint alone never excludes anything.
    """

    ignore_account: Optional[str] = None
    ignore_region: Optional[str] = None

    def matches(self, account_identifiers: Iterable[Optional[str]],
                region: Optional[str]) -> bool:
        """Check whether the pair is excluded.

        Args:
            account_identifiers: Identifiers of the account (key and/or id)
            region: Region of the pair

        Returns:
            True when the pair must be skipped
        """
        if not self.ignore_account:
            return False
        if self.ignore_account not in set(account_identifiers):
            return False
        return not self.ignore_region or self.ignore_region == region

    def as_predicate(self, directory: AccountDirectory) -> ExclusionPredicate:
        """Adapt the exclusion to a (account key, region) predicate."""
        def predicate(account_key: str, region: str) -> bool:
            account = directory.find(account_key)
            account_id = account.id if account else None
            return self.matches((account_key, account_id), region)
        return predicate

    def __bool__(self) -> bool:
        return bool(self.ignore_account)


class ResolvedTargets:
    """Immutable set of targets with a stable iteration order."""

    def __init__(self, targets: Iterable[Target]) -> None:
        self._targets: FrozenSet[Target] = frozenset(targets)
        self._ordered: Tuple[Target, ...] = tuple(sorted(self._targets))

    def accounts(self) -> List[str]:
        """Get the distinct account keys in stable order."""
        return sorted({target.account_key for target in self._targets})

    def as_set(self) -> FrozenSet[Target]:
        return self._targets

    def __contains__(self, target: object) -> bool:
        return target in self._targets

    def __iter__(self) -> Iterator[Target]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ResolvedTargets):
            return self._targets == other._targets
        if isinstance(other, (set, frozenset)):
            return self._targets == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"ResolvedTargets({[str(t) for t in self._ordered]})"


class TargetResolver:
    """Expands ownership rules into deployment targets."""

    def __init__(self, home_region: str,
                 default_regions: Optional[Sequence[str]] = None) -> None:
        """Initialize the resolver.

        Args:
            home_region: Region used when a region is omitted
            default_regions: Regions used by rules that name none
                             (default: the home region only)
        """
        self.home_region = home_region
        self.default_regions: Tuple[str, ...] = tuple(default_regions or (home_region,))

    def normalize_region(self, region: Optional[str]) -> str:
        return region or self.home_region

    def target(self, account_key: str, region: Optional[str] = None) -> Target:
        """Build a target with the region normalized."""
        return Target(account_key=account_key, region=self.normalize_region(region))

    def resolve(self, rule: OwnershipRule, directory: AccountDirectory,
                exclude: Optional[ExclusionPredicate] = None) -> ResolvedTargets:
        """Resolve an ownership rule to a deduplicated set of targets.

        Args:
            rule: Ownership rule to expand
            directory: Account inventory for this run
            exclude: Optional (account key, region) predicate; matching
                     pairs are dropped

        Returns:
            ResolvedTargets with no duplicates

        Raises:
            UnknownAccount: When the rule or sharing predicate names an
                            account missing from the directory
        """
        account_keys = self._account_keys(rule, directory)
        regions = [self.normalize_region(r) for r in rule.regions] or list(self.default_regions)

        targets = set()
        for account_key in account_keys:
            for region in regions:
                if exclude is not None and exclude(account_key, region):
                    logger.debug(f"Excluding {account_key}/{region}")
                    continue
                targets.add(Target(account_key=account_key, region=region))

        resolved = ResolvedTargets(targets)
        logger.debug(f"Resolved {type(rule).__name__} to {resolved}")
        return resolved

    def _account_keys(self, rule: OwnershipRule, directory: AccountDirectory) -> List[str]:
        if isinstance(rule, SingleAccount):
            keys = [rule.account_key]
        elif isinstance(rule, AccountSet):
            keys = list(rule.account_keys)
        elif isinstance(rule, AllAccounts):
            keys = directory.keys()
        elif isinstance(rule, SharedVia):
            shared_to = rule.sharing(directory.accounts, rule.resource_config, rule.ou_key)
            keys = [rule.base_account_key, *shared_to]
        else:
            raise TypeError(f"Unsupported ownership rule: {rule!r}")

        unique_keys = list(dict.fromkeys(keys))
        for key in unique_keys:
            directory.get(key)
        return unique_keys
