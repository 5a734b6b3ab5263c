"""
Checkbook Ledger Module

The Checkbook owns every Account, keyed by name, and routes operations that
span accounts: transfers and cascading deletes. Account names are the natural
key; ids come from storage.
"""

from typing import Collection, Dict, List, Optional, Tuple, Union

from .accounts import (
    ACCOUNT_COLUMNS, ACCOUNTS_TABLE, ENTRIES_TABLE, ENTRY_COLUMNS, Account
)
from .config import CheckbookConfig, get_config
from .entries import Entry
from .errors import UnknownAccountError, ValidationError
from .logging_config import get_logger, log_action, setup_logging
from .storage import StorageInterface, create_storage
from .transfers import TransferProcessor
from .unit_of_work import CompensationLog, run_unit_of_work


class Checkbook:
    """
    Registry of accounts backed by a storage port

    Every registered Account has a persisted accounts row with the same id.
    """

    def __init__(
        self,
        storage: StorageInterface,
        categories: Optional[Collection[str]] = None,
        default_account_type: str = "checking",
        load: bool = True
    ):
        self.storage = storage
        self.categories = tuple(categories or ())
        self.default_account_type = default_account_type
        self.accounts: Dict[str, Account] = {}
        self.transfers = TransferProcessor(self)
        self.logger = get_logger("checkbook.ledger")

        self._create_schema()
        if load:
            self.load_accounts()

    @classmethod
    def from_config(cls, config: Optional[CheckbookConfig] = None) -> 'Checkbook':
        """Build a checkbook, its storage and its logging from configuration"""
        config = config or get_config()
        setup_logging(
            level=config.log_level,
            logger_name="checkbook",
            log_format=config.log_format,
            log_file=config.log_file
        )
        return cls(
            create_storage(config.database_url),
            categories=config.categories,
            default_account_type=config.default_account_type
        )

    def _create_schema(self) -> None:
        self.storage.create_table(ACCOUNTS_TABLE, ACCOUNT_COLUMNS)
        self.storage.create_index(ACCOUNTS_TABLE, "name")
        self.storage.create_table(ENTRIES_TABLE, ENTRY_COLUMNS)
        self.storage.create_index(ENTRIES_TABLE, "account_id")
        self.storage.create_index(ENTRIES_TABLE, "transfer_entry_id")

    def load_accounts(self) -> List[Account]:
        """Register every persisted account, with its entries loaded"""
        for row in self.storage.read(ACCOUNTS_TABLE, order_by="name"):
            if row["name"] in self.accounts:
                continue
            self._adopt(row)
        return self.accounts_by_name()

    def _adopt(self, row: Dict) -> Account:
        account = Account.from_record(self, row)
        account.load_entries()
        self.accounts[account.name] = account
        if not account.entries and account.opening_balance:
            # Row was written but its opening balance never reconciled
            account.save()
        return account

    # Lookup

    def get_account(self, name: str) -> Optional[Account]:
        return self.accounts.get(name)

    def get_account_by_id(self, account_id: int) -> Optional[Account]:
        for account in self.accounts.values():
            if account.id == account_id:
                return account
        return None

    def accounts_by_name(self) -> List[Account]:
        """Alphabetically sorted snapshot of the registered accounts"""
        return sorted(self.accounts.values(), key=lambda account: account.name)

    def total_balance(self) -> int:
        return sum(account.balance for account in self.accounts.values())

    def _resolve(self, name_or_id: Union[Account, str, int]) -> Account:
        if isinstance(name_or_id, Account):
            account = name_or_id if self.accounts.get(name_or_id.name) is name_or_id else None
        elif isinstance(name_or_id, str):
            account = self.get_account(name_or_id)
        else:
            account = self.get_account_by_id(name_or_id)
        if account is None:
            raise UnknownAccountError(name_or_id)
        return account

    # Lifecycle

    def add_or_access_account(
        self,
        name: str,
        account_type: Optional[str] = None,
        balance: int = 0,
        notes: Optional[str] = None
    ) -> Account:
        """
        Return the account called name, creating it if necessary.

        A row already in storage under that name is adopted rather than
        duplicated. A new account with a nonzero balance gets an opening
        balance entry through save().

        Raises:
            ValidationError: If name is blank or balance is not an integer
        """
        if not name or not str(name).strip():
            raise ValidationError("Account name is required")

        existing = self.get_account(name)
        if existing is not None:
            return existing

        rows = self.storage.read(ACCOUNTS_TABLE, {"name": name})
        if rows:
            account = self._adopt(rows[0])
            log_action(
                self.logger, "info", f"Account {name} loaded from storage",
                action="account_adopted", resource=f"account:{account.id}"
            )
            return account

        account = Account(
            self,
            name=name,
            account_type=account_type or self.default_account_type,
            balance=balance,
            notes=notes
        )
        account.id = self.storage.write(ACCOUNTS_TABLE, account.to_record())
        self.accounts[name] = account
        account.save()

        log_action(
            self.logger, "info", f"Account {name} created",
            action="account_created", resource=f"account:{account.id}",
            extra={"type": account.account_type, "opening_balance": balance}
        )
        return account

    def remove_account(self, name_or_id: Union[str, int]) -> None:
        """
        Delete an account, its entries and the other halves of its transfers.

        Storage is cleared in order: transfer counterparts on other accounts,
        this account's entries, the account row. The registry entry goes last.

        Raises:
            UnknownAccountError: If no such account is registered
        """
        account = self._resolve(name_or_id)

        entry_rows = self.storage.read(ENTRIES_TABLE, {"account_id": account.id})
        counterpart_rows = []
        for row in entry_rows:
            if row.get("transfer_entry_id") is None:
                continue
            counterpart_rows.extend(
                other for other in self.storage.read(ENTRIES_TABLE, {
                    "id": row["transfer_entry_id"],
                    "transfer_entry_id": row["id"]
                })
                if other["account_id"] != account.id
            )
        account_rows = self.storage.read(ACCOUNTS_TABLE, {"id": account.id})
        affected_ids = {row["account_id"] for row in counterpart_rows}
        affected = [other for other in self.accounts_by_name() if other.id in affected_ids]

        def unit(log: CompensationLog) -> None:
            for row in counterpart_rows + entry_rows:
                self.storage.erase(ENTRIES_TABLE, {"id": row["id"]})
                log.record(
                    f"restore entry {row['id']}",
                    lambda row=row: self.storage.write(ENTRIES_TABLE, row)
                )
            self.storage.erase(ACCOUNTS_TABLE, {"id": account.id})
            for row in account_rows:
                log.record(
                    f"restore account {account.id}",
                    lambda row=row: self.storage.write(ACCOUNTS_TABLE, row)
                )
            for other in affected:
                other.write_balance(other.stored_balance(), log)

        run_unit_of_work(self.storage, unit)
        del self.accounts[account.name]

        for other in affected:
            other.load_entries()

        log_action(
            self.logger, "info", f"Account {account.name} removed",
            action="account_removed", resource=f"account:{account.id}",
            extra={
                "entries_removed": len(entry_rows),
                "counterparts_removed": len(counterpart_rows)
            }
        )

    # Cross-account operations

    def transfer(
        self,
        source: Union[Account, str],
        target_name: str,
        amount: int,
        **fields
    ) -> Tuple[Entry, Entry]:
        """Transfer amount from source (account or name) to target_name"""
        return self.transfers.transfer(self._resolve(source), target_name, amount, **fields)

    def close(self) -> None:
        self.storage.close()
