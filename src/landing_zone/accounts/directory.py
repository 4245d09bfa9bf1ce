"""Account inventory for a landing zone.

The AccountDirectory is a read-only snapshot of every known account,
loaded once before target resolution begins. It can be loaded from the
DynamoDB parameters table maintained by the landing zone pipeline or from
a local YAML/JSON file.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import yaml
from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.errors import AccountDirectoryError, UnknownAccount


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    """Identity record of one landing zone account."""

    key: str
    id: str
    ou: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Build an account from a parameters-table or file entry.

        Args:
            data: Mapping with 'key' and 'id', optionally 'ou', 'name', 'email'

        Raises:
            AccountDirectoryError: When 'key' or 'id' is missing
        """
        try:
            key = data['key']
            account_id = data['id']
        except (KeyError, TypeError):
            raise AccountDirectoryError(f"Account entry must have 'key' and 'id': {data!r}")
        return cls(
            key=str(key),
            id=str(account_id),
            ou=data.get('ou') or data.get('organizationalUnitKey'),
            name=data.get('name'),
            email=data.get('email'),
        )


class AccountDirectory:
    """Read-only lookup of accounts by key, id and organizational unit."""

    PARAMETER_ITEM_PREFIX = 'accounts'

    def __init__(self, accounts: Iterable[Account]) -> None:
        """Initialize the directory.

        Args:
            accounts: Accounts in load order

        Raises:
            AccountDirectoryError: When two accounts share a key
        """
        self._accounts: Tuple[Account, ...] = tuple(accounts)
        self._by_key: Dict[str, Account] = {}
        for account in self._accounts:
            if account.key in self._by_key:
                raise AccountDirectoryError(f"Duplicate account key: {account.key}")
            self._by_key[account.key] = account

    @property
    def accounts(self) -> Tuple[Account, ...]:
        return self._accounts

    def get(self, key: str) -> Account:
        """Get an account by logical key.

        Raises:
            UnknownAccount: When no account has the key
        """
        account = self._by_key.get(key)
        if account is None:
            raise UnknownAccount(key)
        return account

    def find(self, key: str) -> Optional[Account]:
        return self._by_key.get(key)

    def get_by_id(self, account_id: str) -> Optional[Account]:
        for account in self._accounts:
            if account.id == account_id:
                return account
        return None

    def keys(self) -> List[str]:
        return [account.key for account in self._accounts]

    def in_ou(self, ou_key: str) -> List[Account]:
        return [account for account in self._accounts if account.ou == ou_key]

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __iter__(self) -> Iterator[Account]:
        return iter(self._accounts)

    def __len__(self) -> int:
        return len(self._accounts)

    @classmethod
    def load_from_parameters_table(cls, table_name: str,
                                   aws_client: AWSClientManager) -> 'AccountDirectory':
        """Load accounts from the DynamoDB parameters table.

        Accounts are stored as JSON lists split across items with ids
        ``accounts/0``, ``accounts/1``, ... Reading stops at the first
        missing index.

        Args:
            table_name: Name of the parameters table
            aws_client: AWS client manager

        Returns:
            AccountDirectory with every stored account

        Raises:
            AccountDirectoryError: When the table cannot be read or holds no accounts
        """
        dynamodb = aws_client.get_client('dynamodb')
        accounts: List[Account] = []
        index = 0

        while True:
            item_id = f"{cls.PARAMETER_ITEM_PREFIX}/{index}"
            try:
                response = dynamodb.get_item(
                    TableName=table_name,
                    Key={'id': {'S': item_id}},
                )
            except ClientError as e:
                error_message = e.response['Error']['Message']
                raise AccountDirectoryError(
                    f"Failed to read {item_id} from {table_name}: {error_message}"
                )

            item = response.get('Item')
            if not item:
                if index == 0:
                    raise AccountDirectoryError(
                        f"Cannot find parameter with ID \"{cls.PARAMETER_ITEM_PREFIX}\" in {table_name}"
                    )
                break

            try:
                entries = json.loads(item['value']['S'])
            except (KeyError, TypeError, ValueError) as e:
                raise AccountDirectoryError(f"Malformed {item_id} in {table_name}: {e}")

            accounts.extend(Account.from_dict(entry) for entry in entries)
            index += 1

        logger.info(f"Loaded {len(accounts)} accounts from {table_name}")
        return cls(accounts)

    @classmethod
    def load_from_file(cls, path: str) -> 'AccountDirectory':
        """Load accounts from a YAML or JSON file with an 'accounts' list.

        Raises:
            AccountDirectoryError: When the file is missing or malformed
        """
        file_path = Path(path)
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise AccountDirectoryError(f"Invalid account file {file_path}: {e}")
        except IOError as e:
            raise AccountDirectoryError(f"Unable to read account file {file_path}: {e}")

        entries = data.get('accounts') if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise AccountDirectoryError(f"Account file {file_path} must contain an 'accounts' list")

        accounts = [Account.from_dict(entry) for entry in entries]
        logger.info(f"Loaded {len(accounts)} accounts from {file_path}")
        return cls(accounts)
