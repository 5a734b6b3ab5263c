"""
Transfer Processing Module

A transfer moves money between two accounts as one logical operation made
of two linked entries: a debit on the source and a credit on the target,
each carrying the other's id in transfer_entry_id.

Write order is fixed: the debit is persisted first, then the credit (which
already points at the debit), then the debit is rewritten to point at the
credit. A reader looking at storage mid-transfer can therefore see a lone
debit but never a lone credit. The three entry writes and both balance
writes run as one unit of work; in-memory state is only touched after all
of them succeed.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Tuple

from .accounts import ENTRIES_TABLE, Account
from .entries import Entry, EntryKind, TRANSFER_CATEGORY
from .errors import ConsistencyError, RollbackError, StorageError, UnknownAccountError, ValidationError
from .logging_config import get_logger, log_action
from .unit_of_work import CompensationLog, run_unit_of_work

if TYPE_CHECKING:
    from .ledger import Checkbook


# Set by the processor for each side; callers cannot override them
_RESERVED_TRANSFER_FIELDS = frozenset({
    "id", "kind", "account_id", "category", "transfer_account_id", "transfer_entry_id"
})


class TransferProcessor:
    """Executes transfers between accounts of one checkbook"""

    def __init__(self, checkbook: 'Checkbook'):
        self.checkbook = checkbook
        self.logger = get_logger("checkbook.transfers")

    @property
    def storage(self):
        return self.checkbook.storage

    def transfer(
        self,
        source: Account,
        target_name: str,
        amount: int,
        subject: Optional[str] = None,
        memo: Optional[str] = None,
        **fields
    ) -> Tuple[Entry, Entry]:
        """
        Move amount from source to the account named target_name.

        Args:
            source: Account the money leaves
            target_name: Name of the account the money enters
            amount: Positive integer in minor units
            subject: Defaults to "Transfer: <source> to <target>"
            memo: Optional note copied to both sides
            **fields: Other entry fields (date, cleared, check_number) shared by both sides

        Returns:
            (debit, credit) as persisted and cross-linked

        Raises:
            UnknownAccountError: If the target does not exist
            ValidationError: If amount is not a positive integer or fields are invalid
            StorageError: If storage rejected a write; nothing was kept
            RollbackError: If a failed transfer could not be fully undone
        """
        target = self.checkbook.get_account(target_name)
        if target is None:
            raise UnknownAccountError(target_name)

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Transfer amount must be a positive integer, got {amount!r}")

        reserved = _RESERVED_TRANSFER_FIELDS & set(fields)
        if reserved:
            raise ValidationError(f"Fields set by the transfer cannot be passed: {', '.join(sorted(reserved))}")

        if target is source:
            self.logger.warning(
                "Transfer from %s to itself has no net effect on the balance", source.name
            )

        # Both sides are built independently from one read-only template
        template = dict(fields)
        template.update(
            amount=amount,
            subject=subject or f"Transfer: {source.name} to {target.name}",
            category=TRANSFER_CATEGORY,
            memo=memo,
            date=fields.get("date") or datetime.now(timezone.utc),
        )
        debit = source.new_entry(EntryKind.DEBIT, transfer_account_id=target.id, **template)
        credit = target.new_entry(EntryKind.CREDIT, transfer_account_id=source.id, **template)

        try:
            debit, credit = run_unit_of_work(
                self.storage, lambda log: self._write_pair(source, target, debit, credit, log)
            )
        except RollbackError:
            self.logger.error(
                "Transfer of %s from %s to %s failed and could not be rolled back",
                amount, source.name, target.name
            )
            raise
        except StorageError as e:
            log_action(
                self.logger, "warning",
                f"Transfer of {amount} from {source.name} to {target.name} rolled back",
                action="transfer_rolled_back", resource=f"account:{source.id}",
                extra={"target_account_id": target.id, "amount": amount, "error": str(e)}
            )
            raise StorageError(
                f"Transfer of {amount} from {source.name} to {target.name} failed "
                f"and was rolled back: {e}"
            ) from e

        # Storage already holds both rows and both balances
        source.attach(debit)
        target.attach(credit)

        log_action(
            self.logger, "info",
            f"Transferred {amount} from {source.name} to {target.name}",
            action="transfer_completed", resource=f"entry:{debit.id}",
            extra={
                "source_account_id": source.id,
                "target_account_id": target.id,
                "debit_entry_id": debit.id,
                "credit_entry_id": credit.id,
                "amount": amount
            }
        )
        return debit, credit

    def _write_pair(
        self,
        source: Account,
        target: Account,
        debit: Entry,
        credit: Entry,
        log: CompensationLog
    ) -> Tuple[Entry, Entry]:
        """Persist both sides, cross-link them and store both balances; the caller owns atomicity"""
        storage = self.storage

        debit_id = storage.write(ENTRIES_TABLE, debit.to_record())
        log.record(
            f"erase debit entry {debit_id}",
            lambda: storage.erase(ENTRIES_TABLE, {"id": debit_id})
        )
        debit = replace(debit, id=debit_id)

        credit = replace(credit, transfer_entry_id=debit_id)
        credit_id = storage.write(ENTRIES_TABLE, credit.to_record())
        log.record(
            f"erase credit entry {credit_id}",
            lambda: storage.erase(ENTRIES_TABLE, {"id": credit_id})
        )
        credit = replace(credit, id=credit_id)

        # Each id is only known once its row exists, so the debit is linked last
        debit = replace(debit, transfer_entry_id=credit_id)
        try:
            storage.write(ENTRIES_TABLE, debit.to_record())
        except StorageError as e:
            raise ConsistencyError(
                f"Credit entry {credit_id} was written but linking debit entry "
                f"{debit_id} to it failed: {e}"
            ) from e

        if target is source:
            source.write_balance(source.get_balance(), log)
        else:
            source.write_balance(source.get_balance() + debit.signed_amount, log)
            target.write_balance(target.get_balance() + credit.signed_amount, log)

        return debit, credit
