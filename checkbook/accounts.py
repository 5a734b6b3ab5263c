"""
Account Management Module

An Account owns an ordered sequence of entries and a cached balance derived
from them. Every mutation writes through the storage port first and only
touches in-memory state once storage has accepted the write, so a failed
write leaves the account exactly as it was.
"""

from decimal import Decimal
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

from .entries import Entry, EntryKind, OPENING_BALANCE_CATEGORY, build_entry
from .errors import ConsistencyError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface
from .unit_of_work import CompensationLog, run_unit_of_work

if TYPE_CHECKING:
    from .ledger import Checkbook


ACCOUNTS_TABLE = "accounts"
ENTRIES_TABLE = "entries"

ACCOUNT_COLUMNS = {
    "name": "string",
    "balance": "integer",
    "type": "string",
    "notes": "text",
}

ENTRY_COLUMNS = {
    "account_id": "integer",
    "kind": "string",
    "category": "string",
    "subject": "string",
    "amount": "integer",
    "date": "string",
    "memo": "string",
    "transfer_account_id": "integer",
    "transfer_entry_id": "integer",
    "cleared": "boolean",
    "check_number": "string",
}

# Fields callers may not set on debit/credit; the account supplies them
_RESERVED_ENTRY_FIELDS = frozenset({"id", "kind", "account_id"})


class Account:
    """
    Named account holding entries and a derived balance

    balance always equals the sum of credits minus the sum of debits over
    the loaded entries once an operation completes. opening_balance holds a
    configured starting balance until save() turns it into an entry.
    """

    def __init__(
        self,
        checkbook: 'Checkbook',
        name: str,
        id: Optional[int] = None,
        account_type: str = "checking",
        balance: int = 0,
        notes: Optional[str] = None
    ):
        if not name or not str(name).strip():
            raise ValidationError("Account name is required")
        if isinstance(balance, bool) or not isinstance(balance, int):
            raise ValidationError(f"Account balance must be an integer in minor units, got {balance!r}")

        self.checkbook = checkbook
        self.id = id
        self.name = name
        self.account_type = account_type
        self.notes = notes
        self.balance = balance
        self.opening_balance = balance
        self.entries: List[Entry] = []
        self.logger = get_logger("checkbook.accounts")

    def __repr__(self) -> str:
        return f"Account(id={self.id!r}, name={self.name!r}, balance={self.balance})"

    @property
    def storage(self) -> StorageInterface:
        return self.checkbook.storage

    @classmethod
    def from_record(cls, checkbook: 'Checkbook', data: Dict[str, Any]) -> 'Account':
        """Create an Account from an accounts row (entries are not loaded)"""
        return cls(
            checkbook,
            name=data["name"],
            id=data["id"],
            account_type=data.get("type") or "checking",
            balance=data.get("balance") or 0,
            notes=data.get("notes")
        )

    def to_record(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            "id": self.id,
            "name": self.name,
            "balance": self.balance,
            "type": self.account_type,
            "notes": self.notes,
        }

    # Entry sequence

    def load_entries(self) -> List[Entry]:
        """Replace the in-memory entries with this account's rows from storage"""
        self._require_persisted()
        rows = self.storage.read(ENTRIES_TABLE, {"account_id": self.id}, order_by="date")
        self.entries = [Entry.from_record(row) for row in rows]
        # Stored dates compare as strings; order by the instant they denote
        self.sort()
        if self.entries:
            # Entries exist, so any opening balance was reconciled earlier
            self.opening_balance = 0
        self.balance = self.get_balance()
        return self.entries

    def sort(self, column: str = "date") -> None:
        """Sort entries by a field; equal values keep their existing order"""
        self.entries.sort(key=lambda entry: getattr(entry, column))

    def find_entry(self, entry_id: int) -> Optional[Entry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def attach(self, entry: Entry) -> None:
        """Adopt an already-persisted entry into memory and recompute the balance"""
        self.entries.append(entry)
        self.sort()
        self.balance = self.get_balance()

    def detach(self, entry_id: int) -> None:
        """Drop an entry from memory and recompute the balance"""
        self.entries = [entry for entry in self.entries if entry.id != entry_id]
        self.balance = self.get_balance()

    # Balance

    def get_balance(
        self,
        cleared_only: bool = False,
        kind: Optional[Union[EntryKind, str]] = None
    ) -> int:
        """
        Sum credits minus debits over the in-memory entries.

        Args:
            cleared_only: Only count entries that have cleared
            kind: Only count entries of this kind

        Returns:
            Balance in minor units; entries of unrecognized kind are ignored
        """
        if kind is not None:
            try:
                kind = EntryKind(kind)
            except ValueError:
                raise ValidationError(f"Unknown entry kind filter: {kind!r}")

        balance = 0
        for entry in self.entries:
            if cleared_only and not entry.cleared:
                continue
            if kind is not None and entry.kind != kind:
                continue
            balance += entry.signed_amount
        return balance

    def get_balance_string(self, **filters) -> str:
        """Balance in major units with exactly two decimal places, e.g. '-15.00'"""
        amount = Decimal(self.get_balance(**filters)) / Decimal(100)
        return str(amount.quantize(Decimal("0.01")))

    def persist_balance(self) -> None:
        """Recompute the cached balance and write it to the accounts row"""
        self.balance = self.get_balance()
        self.storage.write(ACCOUNTS_TABLE, {"id": self.id, "balance": self.balance})

    def write_balance(self, balance: int, log: CompensationLog) -> None:
        """
        Persist balance as one step of a unit of work.

        The recorded undo puts back whatever the accounts row held before,
        so a later failure in the same unit leaves the row untouched.
        """
        rows = self.storage.read(ACCOUNTS_TABLE, {"id": self.id})
        previous = rows[0].get("balance", 0) if rows else 0
        self.storage.write(ACCOUNTS_TABLE, {"id": self.id, "balance": balance})
        log.record(
            f"restore balance of account {self.id}",
            lambda: self.storage.write(ACCOUNTS_TABLE, {"id": self.id, "balance": previous})
        )

    def stored_balance(self) -> int:
        """Balance derived from the entry rows currently in storage"""
        rows = self.storage.read(ENTRIES_TABLE, {"account_id": self.id})
        return sum(Entry.from_record(row).signed_amount for row in rows)

    def save(self) -> None:
        """
        Reconcile the persisted balance with the entries.

        An account configured with a nonzero opening balance but no entries
        gets exactly one synthesized 'Opening Balance' entry first. Safe to
        call repeatedly: without an intervening mutation nothing changes.
        """
        self._require_persisted()
        if not self.entries:
            self.load_entries()

        if not self.entries and self.opening_balance:
            opening = self.opening_balance
            kind = EntryKind.CREDIT if opening > 0 else EntryKind.DEBIT
            self._write_entry(kind, {
                "amount": abs(opening),
                "subject": OPENING_BALANCE_CATEGORY,
                "category": OPENING_BALANCE_CATEGORY
            })
            self.opening_balance = 0
            log_action(
                self.logger, "info", f"Opening balance entry created for {self.name}",
                action="opening_balance_synthesized", resource=f"account:{self.id}",
                extra={"amount": opening}
            )

        self.persist_balance()

    # Mutations

    def debit(self, amount: int, subject: Optional[str] = None,
              category: Optional[str] = None, **fields) -> int:
        """Record money leaving the account; returns the new entry id"""
        return self._write_entry(
            EntryKind.DEBIT, dict(fields, amount=amount, subject=subject, category=category)
        )

    def credit(self, amount: int, subject: Optional[str] = None,
               category: Optional[str] = None, **fields) -> int:
        """Record money entering the account; returns the new entry id"""
        return self._write_entry(
            EntryKind.CREDIT, dict(fields, amount=amount, subject=subject, category=category)
        )

    def transfer(self, target_name: str, amount: int, subject: Optional[str] = None,
                 memo: Optional[str] = None, **fields) -> Tuple[Entry, Entry]:
        """Move amount from this account to target_name; returns (debit, credit)"""
        return self.checkbook.transfer(
            self, target_name, amount, subject=subject, memo=memo, **fields
        )

    def new_entry(self, entry_kind: EntryKind, **fields) -> Entry:
        """Build (without persisting) an entry belonging to this account"""
        reserved = _RESERVED_ENTRY_FIELDS & set(fields)
        if reserved:
            raise ValidationError(f"Fields set by the account cannot be passed: {', '.join(sorted(reserved))}")
        return build_entry(
            categories=self.checkbook.categories, account_id=self.id, kind=entry_kind, **fields
        )

    def erase_entry(self, entry_id: int) -> bool:
        """
        Delete an entry by id, together with its transfer counterpart.

        The counterpart's account is reloaded from storage rather than
        adjusted arithmetically. Unknown ids are a no-op.

        Returns:
            True if an entry was removed, False if there was nothing to remove
        """
        entry = self.find_entry(entry_id)
        if entry is None:
            return False

        counterpart = None
        if entry.is_transfer:
            try:
                counterpart = self._locate_counterpart(entry)
            except ConsistencyError as e:
                self.logger.warning("Erasing entry %s without its counterpart: %s", entry.id, e)

        other = None
        if counterpart is not None:
            other = self.checkbook.get_account_by_id(counterpart["account_id"])

        def unit(log: CompensationLog) -> None:
            self._erase_row(entry.to_record(), log)
            if counterpart is not None:
                self._erase_row(counterpart, log)
            self.write_balance(self.stored_balance(), log)
            if other is not None and other is not self:
                other.write_balance(other.stored_balance(), log)

        run_unit_of_work(self.storage, unit)

        self.detach(entry.id)
        if other is self:
            self.detach(counterpart["id"])
        elif other is not None:
            other.load_entries()

        log_action(
            self.logger, "info", f"Entry {entry.id} erased from {self.name}",
            action="entry_erased", resource=f"entry:{entry.id}",
            extra={
                "account_id": self.id,
                "counterpart_id": counterpart["id"] if counterpart else None,
                "counterpart_account_id": other.id if other else None
            }
        )
        return True

    # Internals

    def _require_persisted(self) -> None:
        if self.id is None:
            raise ValidationError(f"Account {self.name!r} has not been persisted")

    def _write_entry(self, kind: EntryKind, fields: Dict[str, Any]) -> int:
        """Validate, then persist the entry and the new balance together, then attach"""
        self._require_persisted()
        entry = self.new_entry(kind, **fields)
        if not self.entries:
            self.load_entries()

        def unit(log: CompensationLog) -> int:
            new_id = self.storage.write(ENTRIES_TABLE, entry.to_record())
            log.record(
                f"erase entry {new_id}",
                lambda: self.storage.erase(ENTRIES_TABLE, {"id": new_id})
            )
            self.write_balance(self.get_balance() + entry.signed_amount, log)
            return new_id

        entry_id = run_unit_of_work(self.storage, unit)
        self.attach(replace(entry, id=entry_id))

        log_action(
            self.logger, "info", f"{kind.value.capitalize()} of {entry.amount} on {self.name}",
            action="entry_written", resource=f"entry:{entry_id}",
            extra={"account_id": self.id, "kind": kind.value, "amount": entry.amount}
        )

        return entry_id

    def _locate_counterpart(self, entry: Entry) -> Dict[str, Any]:
        """Fetch the other half of a transfer and check that it links back"""
        rows = self.storage.read(ENTRIES_TABLE, {"id": entry.transfer_entry_id})
        if not rows:
            raise ConsistencyError(
                f"Entry {entry.id} links to missing entry {entry.transfer_entry_id}"
            )
        counterpart = rows[0]
        if counterpart.get("transfer_entry_id") != entry.id:
            raise ConsistencyError(
                f"Entry {counterpart['id']} does not link back to entry {entry.id}"
            )
        return counterpart

    def _erase_row(self, record: Dict[str, Any], log: CompensationLog) -> None:
        self.storage.erase(ENTRIES_TABLE, {"id": record["id"]})
        log.record(
            f"restore entry {record['id']}",
            lambda: self.storage.write(ENTRIES_TABLE, record)
        )
