"""
Ledger Entry Module

An Entry is one ledger line: a single debit or credit on one account.
Entries are immutable values; persisting one or backfilling its transfer
link produces a new Entry via dataclasses.replace. All entries are built
through build_entry, which owns validation and the default table.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, fields as dataclass_fields
from typing import Any, Collection, Dict, Optional, Union
from enum import Enum

from .errors import ValidationError


class EntryKind(Enum):
    """Side of the ledger an entry sits on"""
    DEBIT = "debit"    # Money out, subtracts from balance
    CREDIT = "credit"  # Money in, adds to balance


TRANSFER_CATEGORY = "Transfer"
OPENING_BALANCE_CATEGORY = "Opening Balance"

# Always accepted, even when a restricted category set is configured
BUILTIN_CATEGORIES = frozenset({TRANSFER_CATEGORY, OPENING_BALANCE_CATEGORY})

# Defaults applied by build_entry to every optional field
ENTRY_DEFAULTS: Dict[str, Any] = {
    "id": None,
    "account_id": None,
    "category": None,
    "subject": None,
    "memo": None,
    "transfer_account_id": None,
    "transfer_entry_id": None,
    "cleared": False,      # New entries are pending until cleared
    "check_number": None,
    # "date" defaults to the current UTC time at construction
}


@dataclass(frozen=True)
class Entry:
    """
    A single persisted (or about to be persisted) ledger line

    amount is always a non-negative integer in minor currency units;
    its sign comes from kind, never from the stored value.
    """
    kind: Union[EntryKind, str]
    amount: int
    date: datetime
    account_id: Optional[int] = None
    category: Optional[str] = None
    subject: Optional[str] = None
    id: Optional[int] = None
    memo: Optional[str] = None
    transfer_account_id: Optional[int] = None
    transfer_entry_id: Optional[int] = None
    cleared: bool = False
    check_number: Optional[str] = None

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    @property
    def is_debit(self) -> bool:
        return self.kind == EntryKind.DEBIT

    @property
    def is_credit(self) -> bool:
        return self.kind == EntryKind.CREDIT

    @property
    def is_transfer(self) -> bool:
        return self.transfer_entry_id is not None

    @property
    def signed_amount(self) -> int:
        """Balance effect of this entry; 0 for an unrecognized kind"""
        if self.is_credit:
            return self.amount
        if self.is_debit:
            return -self.amount
        return 0

    def to_record(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "kind": self.kind.value if isinstance(self.kind, EntryKind) else self.kind,
            "category": self.category,
            "subject": self.subject,
            "amount": self.amount,
            "date": self.date.isoformat(),
            "memo": self.memo,
            "transfer_account_id": self.transfer_account_id,
            "transfer_entry_id": self.transfer_entry_id,
            "cleared": self.cleared,
            "check_number": self.check_number,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> 'Entry':
        """
        Create an Entry from a storage row

        Rows are trusted: an unknown kind is kept as a raw string so the
        balance calculation can skip it instead of failing the whole load.
        """
        try:
            kind = EntryKind(data["kind"])
        except ValueError:
            kind = data["kind"]

        return cls(
            id=data.get("id"),
            account_id=data.get("account_id"),
            kind=kind,
            category=data.get("category"),
            subject=data.get("subject"),
            amount=data["amount"],
            date=_coerce_date(data.get("date")),
            memo=data.get("memo"),
            transfer_account_id=data.get("transfer_account_id"),
            transfer_entry_id=data.get("transfer_entry_id"),
            cleared=bool(data.get("cleared", False)),
            check_number=data.get("check_number"),
        )


ENTRY_FIELDS = frozenset(f.name for f in dataclass_fields(Entry))


def _coerce_date(value: Any) -> datetime:
    """Normalize a date field to a timezone-aware datetime"""
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"Invalid entry date: {value!r}")
    if not isinstance(value, datetime):
        raise ValidationError(f"Entry date must be a datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        # Naive datetimes are taken as UTC so they sort against aware ones
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_entry(categories: Optional[Collection[str]] = None, **fields) -> Entry:
    """
    Build a fully populated Entry from a partial set of fields.

    Pure function: no I/O. Must be called before every persist.

    Args:
        categories: Allowed category tags; empty or None means unrestricted
        **fields: Entry fields; kind, amount, and category or subject are required

    Returns:
        A new Entry with ENTRY_DEFAULTS applied and date defaulted to now

    Raises:
        ValidationError: If a required field is missing or a value is invalid
    """
    unknown = set(fields) - ENTRY_FIELDS
    if unknown:
        raise ValidationError(f"Unknown entry fields: {', '.join(sorted(unknown))}")

    kind = fields.get("kind")
    if kind is None:
        raise ValidationError("Entry kind is required")
    try:
        kind = EntryKind(kind)
    except ValueError:
        raise ValidationError(f"Entry kind must be 'debit' or 'credit', got {kind!r}")

    if not fields.get("category") and not fields.get("subject"):
        raise ValidationError("Entry requires a category or a subject")

    amount = fields.get("amount")
    if amount is None:
        raise ValidationError("Entry amount is required")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Entry amount must be an integer in minor units, got {amount!r}")
    if amount < 0:
        raise ValidationError(f"Entry amount cannot be negative: {amount}")

    category = fields.get("category")
    if categories and category and category not in categories and category not in BUILTIN_CATEGORIES:
        raise ValidationError(f"Unknown category: {category!r}")

    values = dict(ENTRY_DEFAULTS)
    values.update({key: value for key, value in fields.items() if value is not None})
    values["kind"] = kind
    values["date"] = _coerce_date(fields.get("date"))
    values["cleared"] = bool(values["cleared"])
    return Entry(**values)
