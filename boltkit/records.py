"""
This module defines the records passed between the walker, the decoders and
the output sink.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

BucketPath = Tuple[bytes, ...]

PATH_SEPARATOR = "/"


@dataclass(frozen=True)
class Entry:
    """
    One entry produced during traversal.

    Attributes:
        path (BucketPath): Names of the buckets from the root down to the bucket holding `key`.
        key (bytes): The entry key.
        value (Optional[bytes]): Leaf value, or None when the entry is itself a bucket.
        sequence (int): For a leaf, the sequence counter of the bucket holding it.
                        For a bucket, the sequence counter of that bucket.
    """
    path: BucketPath
    key: bytes
    value: Optional[bytes]
    sequence: int = 0

    @property
    def is_bucket(self) -> bool:
        return self.value is None


@dataclass(frozen=True)
class DecodedRecord:
    """
    The printable form of an entry.

    Attributes:
        path (str): The bucket path joined with `/`.
        key (str): The rendered key.
        value (Optional[str]): The rendered value, or None for a bucket.
    """
    path: str
    key: str
    value: Optional[str] = None


class SchemaDecoder(Protocol):
    """Turns raw entries of one schema into printable records."""

    def decode(self, path: BucketPath, key: bytes, value: Optional[bytes],
               sequence: int = 0) -> Optional[DecodedRecord]:
        ...


def render_bytes(data: bytes) -> str:
    """
    Renders bytes as text when they are printable UTF-8, else as `0x<hex>`.

    The empty byte string renders as the empty string.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return "0x" + data.hex()
    if text.isprintable():
        return text
    return "0x" + data.hex()


def render_path(path: Sequence[bytes]) -> str:
    return PATH_SEPARATOR.join(render_bytes(name) for name in path)
