"""Sharing predicates used by SharedVia ownership rules."""

from typing import Any, Dict, List, Optional, Sequence

from ..accounts.directory import Account


def vpc_shared_account_keys(accounts: Sequence[Account],
                            vpc_config: Optional[Dict[str, Any]],
                            ou_key: Optional[str]) -> List[str]:
    """Get the keys of accounts a VPC's subnets are shared to.

    A subnet with ``share-to-ou-accounts`` shares to every account in the
    VPC's organizational unit; ``share-to-specific-accounts`` lists extra
    account keys. The owning account is not included.

    Args:
        accounts: Every account of the directory
        vpc_config: VPC definition with a 'subnets' list
        ou_key: Organizational unit the VPC is defined in

    Returns:
        Deduplicated account keys in first-seen order
    """
    shared: List[str] = []
    for subnet in (vpc_config or {}).get('subnets', []) or []:
        if subnet.get('share-to-ou-accounts') and ou_key:
            shared.extend(account.key for account in accounts if account.ou == ou_key)
        shared.extend(subnet.get('share-to-specific-accounts', []) or [])
    return list(dict.fromkeys(shared))
