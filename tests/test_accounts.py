"""
Test suite for accounts module

Tests entry recording, balance derivation, opening balances and erasure.
Validates that a failed storage write never changes in-memory state.
"""

import pytest

from checkbook.accounts import ACCOUNTS_TABLE, ENTRIES_TABLE, Account
from checkbook.entries import EntryKind, OPENING_BALANCE_CATEGORY
from checkbook.errors import StorageError, ValidationError
from checkbook.ledger import Checkbook
from checkbook.storage import InMemoryStorage, SQLiteStorage

from storage_doubles import FlakyMemoryStorage, FlakySQLiteStorage


def account_row(storage, account):
    return storage.read(ACCOUNTS_TABLE, {"id": account.id})[0]


class TestAccountEntries:
    """Test debit/credit recording and balance upkeep"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.checkbook = Checkbook(self.storage)
        self.account = self.checkbook.add_or_access_account("Checking")

    def test_new_account_is_empty(self):
        assert self.account.id is not None
        assert self.account.balance == 0
        assert self.account.entries == []
        assert account_row(self.storage, self.account)["balance"] == 0

    def test_debit_and_credit(self):
        """Test that entries are persisted and the balance follows them"""
        credit_id = self.account.credit(200000, category="Salary")
        debit_id = self.account.debit(45000, subject="Groceries", category="Food")

        assert self.account.balance == 155000
        assert [e.id for e in self.account.entries] == [credit_id, debit_id]

        rows = self.storage.read(ENTRIES_TABLE, {"account_id": self.account.id})
        assert [row["kind"] for row in rows] == ["credit", "debit"]
        assert rows[1]["subject"] == "Groceries"
        assert account_row(self.storage, self.account)["balance"] == 155000

    def test_balance_matches_entries_after_each_operation(self):
        for amount in (100, 250, 75):
            self.account.credit(amount, subject="Deposit")
            assert self.account.balance == self.account.get_balance()
        self.account.debit(1000, subject="Rent")
        assert self.account.balance == -575
        assert account_row(self.storage, self.account)["balance"] == -575

    def test_entries_sorted_by_date(self):
        later = self.account.credit(100, subject="Later", date="2024-03-01")
        earlier = self.account.debit(50, subject="Earlier", date="2024-01-01")

        assert [e.id for e in self.account.entries] == [earlier, later]

    def test_equal_dates_keep_insertion_order(self):
        first = self.account.debit(10, subject="first", date="2024-01-01")
        second = self.account.debit(20, subject="second", date="2024-01-01")

        assert [e.id for e in self.account.entries] == [first, second]

        self.account.sort("amount")
        assert [e.id for e in self.account.entries] == [first, second]

    def test_loaded_order_matches_attached_order(self):
        """Test that entries with different UTC offsets keep their time order"""
        later = self.account.credit(100, subject="Morning", date="2024-01-01T06:00:00+00:00")
        earlier = self.account.credit(200, subject="Abroad", date="2024-01-01T10:00:00+05:00")
        assert [e.id for e in self.account.entries] == [earlier, later]

        self.account.load_entries()
        assert [e.id for e in self.account.entries] == [earlier, later]

        row = self.storage.read(ENTRIES_TABLE, {"id": earlier})[0]
        assert row["date"] == "2024-01-01T05:00:00+00:00"

    def test_stored_offsets_load_in_time_order(self):
        for date in ("2024-01-01T06:00:00+00:00", "2024-01-01T10:00:00+05:00"):
            self.storage.write(ENTRIES_TABLE, {
                "account_id": self.account.id, "kind": "credit", "amount": 1,
                "subject": "Imported", "date": date
            })

        self.account.load_entries()
        assert [e.id for e in self.account.entries] == [2, 1]

    def test_find_entry(self):
        entry_id = self.account.debit(100, subject="Coffee")
        assert self.account.find_entry(entry_id).subject == "Coffee"
        assert self.account.find_entry(999) is None

    def test_optional_fields_persist(self):
        entry_id = self.account.debit(
            8000, subject="Landlord", memo="March", cleared=True, check_number="1042"
        )
        row = self.storage.read(ENTRIES_TABLE, {"id": entry_id})[0]

        assert row["memo"] == "March"
        assert row["cleared"] is True
        assert row["check_number"] == "1042"
        assert row["transfer_entry_id"] is None

    def test_invalid_entries_write_nothing(self):
        with pytest.raises(ValidationError):
            self.account.debit(-5, subject="Refund")
        with pytest.raises(ValidationError):
            self.account.debit(100)
        with pytest.raises(ValidationError):
            self.account.credit(10.5, subject="Half")

        assert self.storage.count(ENTRIES_TABLE) == 0
        assert self.account.entries == []

    def test_account_supplied_fields_are_reserved(self):
        with pytest.raises(ValidationError, match="kind"):
            self.account.debit(100, subject="x", kind="credit")
        with pytest.raises(ValidationError, match="account_id"):
            self.account.credit(100, subject="x", account_id=99)

    def test_unpersisted_account_rejects_writes(self):
        loose = Account(self.checkbook, "Loose")
        with pytest.raises(ValidationError, match="not been persisted"):
            loose.debit(100, subject="x")

    def test_invalid_account_construction(self):
        with pytest.raises(ValidationError, match="name is required"):
            Account(self.checkbook, "   ")
        with pytest.raises(ValidationError, match="integer"):
            Account(self.checkbook, "Wallet", balance=10.5)


class TestAccountBalance:
    """Test filtered balances and formatting"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.checkbook = Checkbook(self.storage)
        self.account = self.checkbook.add_or_access_account("Checking")

    def test_filtered_balances(self):
        self.account.credit(1000, subject="Paycheck", cleared=True)
        self.account.debit(300, subject="Dinner")

        assert self.account.get_balance() == 700
        assert self.account.get_balance(cleared_only=True) == 1000
        assert self.account.get_balance(kind="debit") == -300
        assert self.account.get_balance(kind=EntryKind.CREDIT) == 1000
        assert self.account.get_balance(cleared_only=True, kind="debit") == 0

    def test_unknown_kind_filter(self):
        with pytest.raises(ValidationError, match="Unknown entry kind filter"):
            self.account.get_balance(kind="refund")

    def test_unknown_kind_rows_are_ignored(self):
        """Test that a foreign row loads without affecting the balance"""
        self.account.credit(100, subject="Deposit")
        self.storage.write(ENTRIES_TABLE, {
            "account_id": self.account.id, "kind": "refund", "amount": 500,
            "subject": "Imported", "date": "2024-01-01T00:00:00+00:00"
        })

        self.account.load_entries()
        assert len(self.account.entries) == 2
        assert self.account.balance == 100

    def test_balance_string(self):
        self.account.debit(1500, subject="Lunch")
        assert self.account.get_balance_string() == "-15.00"

        self.account.credit(1505, subject="Refund")
        assert self.account.get_balance_string() == "0.05"

        self.account.credit(123451, subject="Bonus")
        assert self.account.get_balance_string() == "1234.56"

    def test_balance_string_with_filters(self):
        self.account.credit(2500, subject="Deposit")
        assert self.account.get_balance_string(cleared_only=True) == "0.00"
        assert self.account.get_balance_string(kind="credit") == "25.00"


class TestOpeningBalance:
    """Test save() and opening balance reconciliation"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.checkbook = Checkbook(self.storage)

    def test_positive_opening_balance(self):
        savings = self.checkbook.add_or_access_account("Savings", balance=5000)

        assert len(savings.entries) == 1
        opening = savings.entries[0]
        assert opening.kind == EntryKind.CREDIT
        assert opening.amount == 5000
        assert opening.subject == OPENING_BALANCE_CATEGORY
        assert opening.category == OPENING_BALANCE_CATEGORY
        assert savings.balance == 5000
        assert savings.opening_balance == 0
        assert account_row(self.storage, savings)["balance"] == 5000

    def test_negative_opening_balance(self):
        card = self.checkbook.add_or_access_account("Card", account_type="credit", balance=-2500)

        assert len(card.entries) == 1
        assert card.entries[0].kind == EntryKind.DEBIT
        assert card.entries[0].amount == 2500
        assert card.balance == -2500
        assert card.account_type == "credit"

    def test_save_is_idempotent(self):
        savings = self.checkbook.add_or_access_account("Savings", balance=5000)
        savings.save()
        savings.save()

        assert len(savings.entries) == 1
        assert self.storage.count(ENTRIES_TABLE, {"account_id": savings.id}) == 1
        assert savings.balance == 5000

    def test_erased_opening_entry_is_not_recreated(self):
        savings = self.checkbook.add_or_access_account("Savings", balance=5000)
        assert savings.erase_entry(savings.entries[0].id) is True

        savings.save()
        assert savings.entries == []
        assert savings.balance == 0
        assert account_row(self.storage, savings)["balance"] == 0

    def test_save_loads_entries_lazily(self):
        """Test that save() on a fresh Account reloads instead of synthesizing"""
        checking = self.checkbook.add_or_access_account("Checking")
        checking.debit(700, subject="Utilities")

        fresh = Account.from_record(self.checkbook, account_row(self.storage, checking))
        assert fresh.entries == []
        assert fresh.balance == -700

        fresh.save()
        assert len(fresh.entries) == 1
        assert fresh.balance == -700
        assert self.storage.count(ENTRIES_TABLE) == 1


class TestEraseEntry:
    """Test entry erasure, including transfer counterparts"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.checkbook = Checkbook(self.storage)
        self.checking = self.checkbook.add_or_access_account("Checking", balance=10000)
        self.savings = self.checkbook.add_or_access_account("Savings")

    def test_erase_plain_entry(self):
        entry_id = self.checking.debit(300, subject="Coffee")

        assert self.checking.erase_entry(entry_id) is True
        assert self.checking.find_entry(entry_id) is None
        assert self.checking.balance == 10000
        assert self.storage.read(ENTRIES_TABLE, {"id": entry_id}) == []
        assert account_row(self.storage, self.checking)["balance"] == 10000

    def test_erase_is_idempotent(self):
        entry_id = self.checking.debit(300, subject="Coffee")

        assert self.checking.erase_entry(entry_id) is True
        assert self.checking.erase_entry(entry_id) is False
        assert self.checking.erase_entry(424242) is False
        assert self.checking.balance == 10000

    def test_erase_transfer_removes_both_sides(self):
        debit, credit = self.checking.transfer("Savings", 1500)

        assert self.checking.erase_entry(debit.id) is True

        assert self.storage.read(ENTRIES_TABLE, {"id": debit.id}) == []
        assert self.storage.read(ENTRIES_TABLE, {"id": credit.id}) == []
        assert self.checking.balance == 10000
        assert self.savings.balance == 0
        assert self.savings.entries == []
        assert account_row(self.storage, self.savings)["balance"] == 0

    def test_erase_transfer_from_credit_side(self):
        debit, credit = self.checking.transfer("Savings", 1500)

        assert self.savings.erase_entry(credit.id) is True

        assert self.checking.find_entry(debit.id) is None
        assert self.checking.balance == 10000
        assert self.savings.balance == 0
        assert self.storage.count(ENTRIES_TABLE) == 1  # Opening balance only

    def test_erase_with_missing_counterpart(self):
        """Test that a dangling link is tolerated and this side still goes"""
        debit, credit = self.checking.transfer("Savings", 1500)
        self.storage.erase(ENTRIES_TABLE, {"id": credit.id})

        assert self.checking.erase_entry(debit.id) is True
        assert self.checking.balance == 10000
        assert self.storage.read(ENTRIES_TABLE, {"id": debit.id}) == []


class TestStorageFailures:
    """Test that failed writes leave accounts untouched"""

    def make_checkbook(self, storage):
        self.storage = storage
        self.checkbook = Checkbook(storage)
        self.checking = self.checkbook.add_or_access_account("Checking")
        self.savings = self.checkbook.add_or_access_account("Savings")

    def test_failed_entry_write(self):
        self.make_checkbook(FlakyMemoryStorage())
        self.storage.arm("write", 0)

        with pytest.raises(StorageError, match="Simulated write failure"):
            self.checking.debit(500, subject="Coffee")

        assert self.checking.entries == []
        assert self.checking.balance == 0
        assert self.storage.count(ENTRIES_TABLE) == 0
        assert account_row(self.storage, self.checking)["balance"] == 0

    @pytest.mark.parametrize("storage_class", [FlakyMemoryStorage, FlakySQLiteStorage])
    def test_failed_balance_write_discards_entry(self, storage_class):
        self.make_checkbook(storage_class())
        self.storage.target_table = ACCOUNTS_TABLE
        self.storage.arm("write", 0)

        with pytest.raises(StorageError, match="Simulated write failure on accounts"):
            self.checking.debit(500, subject="Coffee")

        assert self.checking.entries == []
        assert self.checking.balance == 0
        assert self.storage.count(ENTRIES_TABLE) == 0
        assert account_row(self.storage, self.checking)["balance"] == 0

        self.checking.debit(500, subject="Coffee")
        assert self.checking.balance == -500
        assert account_row(self.storage, self.checking)["balance"] == -500

    @pytest.mark.parametrize("storage_class", [FlakyMemoryStorage, FlakySQLiteStorage])
    def test_failed_balance_write_during_erase(self, storage_class):
        self.make_checkbook(storage_class())
        debit, credit = self.checking.transfer("Savings", 1500)
        rows_before = self.storage.read(ENTRIES_TABLE, order_by="id")

        # The erasing account's balance is stored, the other account's is not
        self.storage.target_table = ACCOUNTS_TABLE
        self.storage.arm("write", 1)
        with pytest.raises(StorageError, match="Simulated write failure on accounts"):
            self.checking.erase_entry(debit.id)

        assert self.storage.read(ENTRIES_TABLE, order_by="id") == rows_before
        assert account_row(self.storage, self.checking)["balance"] == -1500
        assert account_row(self.storage, self.savings)["balance"] == 1500
        assert self.checking.balance == -1500
        assert self.savings.balance == 1500

    @pytest.mark.parametrize("storage_class", [FlakyMemoryStorage, FlakySQLiteStorage])
    def test_failed_transfer_erase_is_undone(self, storage_class):
        self.make_checkbook(storage_class())
        debit, credit = self.checking.transfer("Savings", 1500)
        rows_before = self.storage.read(ENTRIES_TABLE, order_by="id")

        # First erase succeeds, the counterpart erase fails
        self.storage.arm("erase", 1)
        with pytest.raises(StorageError, match="Simulated erase failure"):
            self.checking.erase_entry(debit.id)
        self.storage.disarm()

        assert self.storage.read(ENTRIES_TABLE, order_by="id") == rows_before
        assert self.checking.find_entry(debit.id) is not None
        assert self.checking.balance == -1500
        assert self.savings.balance == 1500

    def test_sqlite_backed_account(self):
        self.make_checkbook(SQLiteStorage())
        self.checking.credit(900, subject="Deposit")
        self.checking.debit(400, subject="Books")

        assert self.checking.balance == 500
        assert account_row(self.storage, self.checking)["balance"] == 500
