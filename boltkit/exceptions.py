"""
Custom exceptions for the BoltKit library.
"""


class BoltKitError(Exception):
    """Base exception for all errors raised by BoltKit."""
    pass


class OpenError(BoltKitError):
    """Raised when a store file is missing, unreadable, or not a valid bbolt database."""
    pass


class StoreCorruptError(BoltKitError):
    """Raised when a page reached during traversal is structurally invalid."""
    pass


class StoreClosedError(BoltKitError):
    """Raised when a store handle is used after it has been closed."""
    pass


class ReadOnlyError(BoltKitError):
    """Raised on any attempt to modify a store; handles are opened read-only."""
    pass


class DecodeError(BoltKitError):
    """
    Raised when the value under a recognized bucket does not have the shape
    that bucket should contain.

    Attributes:
        path (str): Display path of the bucket holding the offending entry.
        key (str): Display form of the offending key.
        reason (str): What was wrong with the bytes.
    """

    def __init__(self, path: str, key: str, reason: str):
        self.path = path
        self.key = key
        self.reason = reason
        super().__init__(f"cannot decode {path},{key}: {reason}")


class WalkError(BoltKitError):
    """
    Raised when a traversal is aborted. The error that stopped the walk is
    chained as `__cause__` and kept on `cause`.
    """

    def __init__(self, cause: BaseException, path: str = "", key: str = ""):
        self.cause = cause
        self.path = path
        self.key = key
        super().__init__(f"walk aborted at {path},{key}: {cause}")
