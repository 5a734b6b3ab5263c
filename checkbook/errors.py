"""
Checkbook Error Types

Every failure raised by the ledger engine derives from CheckbookError.
Validation problems also subclass ValueError and lookup misses subclass
LookupError so callers catching the builtin types keep working.
"""


class CheckbookError(Exception):
    """Base class for all checkbook errors"""
    pass


class ValidationError(CheckbookError, ValueError):
    """Missing or invalid entry/account fields, raised before any I/O"""
    pass


class UnknownAccountError(CheckbookError, LookupError):
    """Transfer target or account lookup miss"""

    def __init__(self, account: object):
        self.account = account
        super().__init__(f"Account {account!r} does not exist")


class StorageError(CheckbookError):
    """Any failure reported by the storage port"""
    pass


class ConsistencyError(StorageError):
    """
    A multi-row write left storage in a state that breaks the transfer
    pair invariant (fix-up write failed, counterpart missing, or a
    compensating delete could not be applied)
    """
    pass


class RollbackError(ConsistencyError):
    """Compensating actions failed, so storage still holds part of a unit of work"""
    pass
