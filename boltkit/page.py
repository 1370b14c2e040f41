"""
On-disk layout of a bbolt database file.

A bbolt file is a sequence of fixed-size pages. Pages 0 and 1 hold the two
meta pages; every other page is a branch page, a leaf page, a freelist page,
or a continuation (overflow) of the page before it. All integers are stored
little-endian.

    page header   id u64 | flags u16 | count u16 | overflow u32
    meta          magic u32 | version u32 | page_size u32 | flags u32 |
                  root u64 | sequence u64 | freelist u64 | pgid u64 |
                  txid u64 | checksum u64
    branch elem   pos u32 | ksize u32 | pgid u64
    leaf elem     flags u32 | pos u32 | ksize u32 | vsize u32
    bucket value  root u64 | sequence u64 [| inline page]

The functions here only parse; nothing in this module writes to a buffer.
"""

import struct
from dataclasses import dataclass
from typing import Iterator, List, Tuple

from boltkit.exceptions import StoreCorruptError

MAGIC = 0xED0CDAED
VERSION = 2

BRANCH_PAGE_FLAG = 0x01
LEAF_PAGE_FLAG = 0x02
META_PAGE_FLAG = 0x04
FREELIST_PAGE_FLAG = 0x10

BUCKET_LEAF_FLAG = 0x01

PAGE_HEADER = struct.Struct("<QHHI")
META = struct.Struct("<IIIIQQQQQQ")
BRANCH_ELEMENT = struct.Struct("<IIQ")
LEAF_ELEMENT = struct.Struct("<IIII")
BUCKET_HEADER = struct.Struct("<QQ")

PAGE_HEADER_SIZE = PAGE_HEADER.size
META_CHECKSUM_OFFSET = META.size - 8

# Page sizes probed when meta page 0 is unusable and the real size is unknown.
COMMON_PAGE_SIZES = (4096, 8192, 16384, 32768, 65536, 2048, 1024)

FNV64_OFFSET = 0xCBF29CE484222325
FNV64_PRIME = 0x100000001B3


def fnv64a(data: bytes) -> int:
    """FNV-1a 64-bit hash, the checksum bbolt stores in its meta pages."""
    h = FNV64_OFFSET
    for b in data:
        h ^= b
        h = (h * FNV64_PRIME) & 0xFFFFFFFFFFFFFFFF
    return h


@dataclass(frozen=True)
class PageHeader:
    id: int
    flags: int
    count: int
    overflow: int


@dataclass(frozen=True)
class Meta:
    """
    Decoded contents of a meta page.

    Attributes:
        page_size (int): Size in bytes of every page in the file.
        root (int): Page id of the root bucket.
        sequence (int): Sequence counter of the root bucket.
        pgid (int): High water mark; every valid page id is below it.
        txid (int): Transaction id that wrote this meta page.
        valid (bool): True when magic, version and checksum all match.
    """
    magic: int
    version: int
    page_size: int
    flags: int
    root: int
    sequence: int
    freelist: int
    pgid: int
    txid: int
    checksum: int
    valid: bool


def read_page_header(buf, offset: int) -> PageHeader:
    if offset < 0 or offset + PAGE_HEADER_SIZE > len(buf):
        raise StoreCorruptError(f"page header at offset {offset} is outside the file")
    return PageHeader(*PAGE_HEADER.unpack_from(buf, offset))


def read_meta(buf, page_offset: int) -> Meta:
    """
    Parses the meta page starting at `page_offset`.

    Never raises for bad content; callers check `Meta.valid` instead, since
    bbolt keeps two meta pages exactly so that one of them may be damaged.
    """
    start = page_offset + PAGE_HEADER_SIZE
    if start + META.size > len(buf):
        return Meta(0, 0, 0, 0, 0, 0, 0, 0, 0, 0, False)
    header = PAGE_HEADER.unpack_from(buf, page_offset)
    fields = META.unpack_from(buf, start)
    checksum = fnv64a(bytes(buf[start:start + META_CHECKSUM_OFFSET]))
    valid = (
        fields[0] == MAGIC
        and fields[1] == VERSION
        and fields[9] == checksum
        and header[1] & META_PAGE_FLAG != 0
    )
    return Meta(*fields, valid=valid)


def read_bucket_header(value: bytes) -> Tuple[int, int]:
    """Returns (root page id, sequence) stored at the front of a bucket value."""
    if len(value) < BUCKET_HEADER.size:
        raise StoreCorruptError(f"bucket value of {len(value)} bytes is too short for a bucket header")
    return BUCKET_HEADER.unpack_from(value, 0)


def iter_branch_elements(buf, page_offset: int, count: int, limit: int) -> Iterator[Tuple[bytes, int]]:
    """Yields (first key, child page id) for every element of a branch page."""
    base = page_offset + PAGE_HEADER_SIZE
    for i in range(count):
        elem = base + i * BRANCH_ELEMENT.size
        if elem + BRANCH_ELEMENT.size > limit:
            raise StoreCorruptError(f"branch element {i} of page at offset {page_offset} is truncated")
        pos, ksize, pgid = BRANCH_ELEMENT.unpack_from(buf, elem)
        key_start = elem + pos
        if key_start + ksize > limit:
            raise StoreCorruptError(f"branch element {i} of page at offset {page_offset} points outside its page")
        yield bytes(buf[key_start:key_start + ksize]), pgid


def iter_leaf_elements(buf, page_offset: int, count: int, limit: int) -> Iterator[Tuple[int, bytes, bytes]]:
    """Yields (flags, key, value) for every element of a leaf page."""
    base = page_offset + PAGE_HEADER_SIZE
    for i in range(count):
        elem = base + i * LEAF_ELEMENT.size
        if elem + LEAF_ELEMENT.size > limit:
            raise StoreCorruptError(f"leaf element {i} of page at offset {page_offset} is truncated")
        flags, pos, ksize, vsize = LEAF_ELEMENT.unpack_from(buf, elem)
        key_start = elem + pos
        value_start = key_start + ksize
        if value_start + vsize > limit:
            raise StoreCorruptError(f"leaf element {i} of page at offset {page_offset} points outside its page")
        yield flags, bytes(buf[key_start:value_start]), bytes(buf[value_start:value_start + vsize])


def page_kind(flags: int) -> str:
    names: List[str] = []
    for flag, name in ((BRANCH_PAGE_FLAG, "branch"), (LEAF_PAGE_FLAG, "leaf"),
                       (META_PAGE_FLAG, "meta"), (FREELIST_PAGE_FLAG, "freelist")):
        if flags & flag:
            names.append(name)
    return "|".join(names) or f"unknown(0x{flags:02x})"
