"""
Depth-first traversal of every bucket and key in a bbolt database.
"""

import logging
from typing import Callable, Optional

from boltkit.exceptions import StoreCorruptError, WalkError
from boltkit.records import BucketPath, render_bytes, render_path
from boltkit.store import BoltStore, Bucket

logger = logging.getLogger(__name__)

Visitor = Callable[[BucketPath, bytes, Optional[bytes], int], None]


def walk(store: BoltStore, visit: Visitor) -> int:
    """
    Visits every entry of the store in depth-first pre-order.

    Top-level buckets are visited with an empty path. A nested bucket is
    visited with `value=None` and the bucket's own sequence counter, then its
    entries are visited before the walk moves on to the next sibling. A leaf
    is visited with its value and the sequence counter of the bucket that
    holds it. Within a bucket, keys come in ascending byte order.

    Args:
        store (BoltStore): An open store.
        visit (Visitor): Called as visit(path, key, value, sequence).

    Returns:
        int: The number of entries visited.

    Raises:
        WalkError: If `visit` raises or a corrupt page is reached. The walk stops
                   at that entry and the original exception is the `__cause__`.
    """
    counter = [0]
    try:
        _walk_bucket(store.root(), (), visit, counter)
    except StoreCorruptError as e:
        logger.error(f"Walk of {store.path} stopped by a corrupt page after {counter[0]} entries: {e}")
        raise WalkError(e) from e
    logger.debug(f"Walked {counter[0]} entries of {store.path}")
    return counter[0]


def _walk_bucket(bucket: Bucket, path: BucketPath, visit: Visitor, counter: list):
    for key, value in bucket.entries():
        if isinstance(value, Bucket):
            _visit(visit, path, key, None, value.sequence, counter)
            _walk_bucket(value, path + (key,), visit, counter)
        else:
            _visit(visit, path, key, value, bucket.sequence, counter)


def _visit(visit: Visitor, path: BucketPath, key: bytes, value: Optional[bytes], sequence: int, counter: list):
    try:
        visit(path, key, value, sequence)
    except Exception as e:
        display_path, display_key = render_path(path), render_bytes(key)
        logger.error(f"Walk aborted at {display_path},{display_key}: {e}")
        raise WalkError(e, display_path, display_key) from e
    counter[0] += 1
