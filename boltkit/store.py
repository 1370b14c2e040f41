"""
Read-only access to a bbolt database file.

The file is memory-mapped with `ACCESS_READ`, so the mapping itself refuses
writes, and the `Bucket` write methods raise `ReadOnlyError` before anything
reaches the map. Keys and values are copied out of the map as `bytes`, which
means nothing handed to callers keeps the mapping alive after `close()`.
"""

import logging
import mmap
import os
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

from boltkit.exceptions import OpenError, ReadOnlyError, StoreClosedError, StoreCorruptError
from boltkit.page import (
    BRANCH_PAGE_FLAG,
    BUCKET_HEADER,
    BUCKET_LEAF_FLAG,
    COMMON_PAGE_SIZES,
    LEAF_PAGE_FLAG,
    Meta,
    iter_branch_elements,
    iter_leaf_elements,
    page_kind,
    read_bucket_header,
    read_meta,
    read_page_header,
)

logger = logging.getLogger(__name__)

# B+tree depth beyond which a page chain is treated as a cycle.
MAX_TREE_DEPTH = 64

MIN_PAGE_SIZE = 1024

Value = Union[bytes, "Bucket"]


class Bucket:
    """
    A bucket inside a bbolt database.

    A bucket either owns a tree of pages rooted at `root`, or, when `root` is
    zero, carries its single leaf page inline in the parent's value.
    """

    def __init__(self, store: "BoltStore", root: int, sequence: int, inline: Optional[bytes] = None):
        self._store = store
        self.root = root
        self.sequence = sequence
        self._inline = inline

    @property
    def is_inline(self) -> bool:
        return self.root == 0

    def entries(self) -> Iterator[Tuple[bytes, Value]]:
        """
        Yields every (key, value) pair of the bucket in ascending key order.

        Nested buckets are yielded as `Bucket` objects, leaf values as bytes.
        """
        for flags, key, value in self._leaf_elements():
            if flags & BUCKET_LEAF_FLAG:
                yield key, self._child(value)
            else:
                yield key, value

    def get(self, key: bytes) -> Optional[Value]:
        for k, v in self.entries():
            if k == key:
                return v
            if k > key:
                break
        return None

    def bucket(self, name: bytes) -> Optional["Bucket"]:
        value = self.get(name)
        return value if isinstance(value, Bucket) else None

    def put(self, key: bytes, value: bytes):
        raise ReadOnlyError("cannot put a key: store is opened read-only")

    def delete(self, key: bytes):
        raise ReadOnlyError("cannot delete a key: store is opened read-only")

    def create_bucket(self, name: bytes):
        raise ReadOnlyError("cannot create a bucket: store is opened read-only")

    def delete_bucket(self, name: bytes):
        raise ReadOnlyError("cannot delete a bucket: store is opened read-only")

    def set_sequence(self, value: int):
        raise ReadOnlyError("cannot set a sequence: store is opened read-only")

    def _child(self, value: bytes) -> "Bucket":
        root, sequence = read_bucket_header(value)
        if root == 0:
            return Bucket(self._store, 0, sequence, inline=value[BUCKET_HEADER.size:])
        return Bucket(self._store, root, sequence)

    def _leaf_elements(self) -> Iterator[Tuple[int, bytes, bytes]]:
        if self._inline is not None:
            header = read_page_header(self._inline, 0)
            if not header.flags & LEAF_PAGE_FLAG:
                raise StoreCorruptError(f"inline bucket holds a {page_kind(header.flags)} page, expected leaf")
            yield from iter_leaf_elements(self._inline, 0, header.count, len(self._inline))
            return
        yield from self._store._walk_pages(self.root, 0)

    def __repr__(self) -> str:
        kind = "inline" if self.is_inline else f"root={self.root}"
        return f"Bucket({kind}, sequence={self.sequence})"


class BoltStore:
    """
    A bbolt database opened strictly read-only.

    Use as a context manager so the handle is released on every exit path:

        with BoltStore.open("meta.db") as store:
            for name, bucket in store.root().entries():
                ...
    """

    def __init__(self, path: Union[str, Path]):
        """
        Opens the database file and selects the newest valid meta page.

        Args:
            path (str | Path): Path to the bbolt file.

        Raises:
            OpenError: If the file is missing, unreadable, empty, or has no valid meta page.
        """
        self.path = str(path)
        self._file = None
        self._map = None
        self._closed = False

        try:
            self._file = open(self.path, "rb")
        except OSError as e:
            raise OpenError(f"cannot open bolt database {self.path}: {e}") from e

        try:
            if os.fstat(self._file.fileno()).st_size == 0:
                raise OpenError(f"bolt database {self.path} is empty")
            self._map = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
            self.meta = self._select_meta()
        except OSError as e:
            self._release()
            raise OpenError(f"cannot map bolt database {self.path}: {e}") from e
        except OpenError:
            self._release()
            raise

        logger.debug(
            f"Opened bolt database {self.path} (page size {self.meta.page_size}, "
            f"txid {self.meta.txid}, {self.meta.pgid} pages)"
        )

    @classmethod
    def open(cls, path: Union[str, Path]) -> "BoltStore":
        return cls(path)

    @property
    def page_size(self) -> int:
        return self.meta.page_size

    @property
    def txid(self) -> int:
        return self.meta.txid

    @property
    def closed(self) -> bool:
        return self._closed

    def root(self) -> Bucket:
        self._check_open()
        return Bucket(self, self.meta.root, self.meta.sequence)

    def bucket(self, *names: bytes) -> Optional[Bucket]:
        """Follows `names` down from the root; returns None if any bucket is missing."""
        current = self.root()
        for name in names:
            current = current.bucket(name)
            if current is None:
                return None
        return current

    def close(self):
        if self._closed:
            return
        self._release()
        self._closed = True
        logger.debug(f"Closed bolt database {self.path}")

    def __enter__(self) -> "BoltStore":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _release(self):
        if self._map is not None:
            self._map.close()
            self._map = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def _check_open(self):
        if self._closed:
            raise StoreClosedError(f"bolt database {self.path} is closed")

    def _select_meta(self) -> Meta:
        candidates = []
        meta0 = read_meta(self._map, 0)
        if meta0.valid:
            candidates.append(meta0)
            meta1 = read_meta(self._map, meta0.page_size)
            if meta1.valid and meta1.page_size == meta0.page_size:
                candidates.append(meta1)
        else:
            logger.warning(f"Meta page 0 of {self.path} is invalid; probing for meta page 1")
            for size in COMMON_PAGE_SIZES + (mmap.PAGESIZE,):
                meta1 = read_meta(self._map, size)
                if meta1.valid and meta1.page_size == size:
                    candidates.append(meta1)
                    break

        if not candidates:
            raise OpenError(f"{self.path} is not a bolt database: no valid meta page")

        meta = max(candidates, key=lambda m: m.txid)
        if meta.page_size < MIN_PAGE_SIZE:
            raise OpenError(f"{self.path} declares an invalid page size {meta.page_size}")
        if meta.root < 2 or meta.root >= meta.pgid:
            raise OpenError(f"{self.path} has an invalid root page id {meta.root}")
        return meta

    def _page(self, pgid: int) -> Tuple[int, int, int, int]:
        """Returns (offset, flags, count, limit) of a branch or leaf page after checking its bounds."""
        self._check_open()
        if pgid < 2 or pgid >= self.meta.pgid:
            raise StoreCorruptError(f"page id {pgid} is out of range (high water mark {self.meta.pgid})")
        offset = pgid * self.meta.page_size
        header = read_page_header(self._map, offset)
        limit = offset + (header.overflow + 1) * self.meta.page_size
        if limit > len(self._map):
            raise StoreCorruptError(f"page {pgid} with {header.overflow} overflow pages runs past the end of the file")
        return offset, header.flags, header.count, limit

    def _walk_pages(self, pgid: int, depth: int) -> Iterator[Tuple[int, bytes, bytes]]:
        if depth > MAX_TREE_DEPTH:
            raise StoreCorruptError(f"page tree deeper than {MAX_TREE_DEPTH} levels at page {pgid}")
        offset, flags, count, limit = self._page(pgid)
        if flags & LEAF_PAGE_FLAG:
            yield from iter_leaf_elements(self._map, offset, count, limit)
        elif flags & BRANCH_PAGE_FLAG:
            children = [child for _, child in iter_branch_elements(self._map, offset, count, limit)]
            for child in children:
                yield from self._walk_pages(child, depth + 1)
        else:
            raise StoreCorruptError(f"page {pgid} is a {page_kind(flags)} page, expected branch or leaf")

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"txid={self.meta.txid}"
        return f"BoltStore({self.path!r}, {state})"
