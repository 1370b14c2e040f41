"""
Decoder for the bolt databases written by containerd.

Two layouts are understood. The metadata store (`meta.db`) keeps one bucket
per namespace under `v1`:

    v1/
      version                              schema version (varint)
      <namespace>/
        labels/                            namespace labels
        images/<name>/                     createdat, updatedat, target/{digest,mediatype,size}
        containers/<id>/                   createdat, updatedat, spec, runtime/{name,options}, extensions/
        sandboxes/<id>/                    createdat, updatedat, spec, runtime/{name,options}, extensions/
        content/blob/<digest>/             createdat, updatedat, size
        content/ingests/<ref>/             ref, expireat, expected
        snapshots/<snapshotter>/<key>/     name, parent, children/, createdat, updatedat
        leases/<id>/                       createdat, content/<digest>, snapshots/, ingests/, images/

The snapshotter metastore (`metadata.db` of a snapshotter) keeps
`v1/snapshots/<key>/{id,kind,parent,inodes,size,createdat,updatedat}` and a
`v1/parents` index keyed by two varint snapshot ids.

Each structural position is a `Rule` in a flat table; the first rule whose
path shape, key and entry kind match decides how the entry is rendered.
Entries no rule claims are rendered best-effort.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, Optional, Sequence, Tuple, Union

from boltkit.codec import (
    decode_any,
    decode_go_time,
    decode_snapshot_kind,
    decode_uint_be,
    decode_uvarint_exact,
    decode_varint,
    decode_varint_pair,
    normalize_digest,
)
from boltkit.exceptions import DecodeError
from boltkit.records import BucketPath, DecodedRecord, render_bytes, render_path

logger = logging.getLogger(__name__)

ANY = None

# Integer decoders are rendered with str().
Renderer = Callable[[bytes], Union[int, str]]


class Category(Enum):
    """Object categories of the containerd layouts."""
    VERSION = "version"
    IMAGES = "images"
    CONTAINERS = "containers"
    SANDBOXES = "sandboxes"
    CONTENT = "content"
    INGESTS = "ingests"
    SNAPSHOTS = "snapshots"
    LEASES = "leases"
    METASTORE = "metastore"


class EntryKind(Enum):
    LEAF = "leaf"
    BUCKET = "bucket"


@dataclass(frozen=True)
class Rule:
    """
    How to render the entries at one structural position.

    Attributes:
        category (Category): The object category the position belongs to.
        shape (Tuple[Optional[bytes], ...]): Bucket path to match; `ANY` matches any one name.
        keys (Optional[FrozenSet[bytes]]): Keys the rule applies to, or None for every key.
        kind (EntryKind): Whether the rule applies to leaves or to bucket markers.
        key (Optional[Renderer]): Renders the key; raw rendering when None.
        value (Optional[Renderer]): Renders a leaf value; raw rendering when None.
    """
    category: Category
    shape: Tuple[Optional[bytes], ...]
    keys: Optional[FrozenSet[bytes]] = None
    kind: EntryKind = EntryKind.LEAF
    key: Optional[Renderer] = None
    value: Optional[Renderer] = None

    def matches(self, path: BucketPath, key: bytes, kind: EntryKind) -> bool:
        if kind is not self.kind or len(path) != len(self.shape):
            return False
        if self.keys is not None and key not in self.keys:
            return False
        return all(want is ANY or want == name for want, name in zip(self.shape, path))


def _keys(*names: str) -> FrozenSet[bytes]:
    return frozenset(name.encode() for name in names)


TIMESTAMPS = _keys("createdat", "updatedat")

CONTAINERD_RULES: Tuple[Rule, ...] = (
    Rule(Category.VERSION, (b"v1",), _keys("version"), value=decode_varint),

    Rule(Category.IMAGES, (b"v1", ANY, b"images", ANY), TIMESTAMPS, value=decode_go_time),
    Rule(Category.IMAGES, (b"v1", ANY, b"images", ANY, b"target"), _keys("digest"), value=normalize_digest),
    Rule(Category.IMAGES, (b"v1", ANY, b"images", ANY, b"target"), _keys("size"), value=decode_varint),

    Rule(Category.CONTAINERS, (b"v1", ANY, b"containers", ANY), TIMESTAMPS, value=decode_go_time),
    Rule(Category.CONTAINERS, (b"v1", ANY, b"containers", ANY), _keys("spec"), value=decode_any),
    Rule(Category.CONTAINERS, (b"v1", ANY, b"containers", ANY, b"runtime"), _keys("options"), value=decode_any),
    Rule(Category.CONTAINERS, (b"v1", ANY, b"containers", ANY, b"extensions"), value=decode_any),

    Rule(Category.SANDBOXES, (b"v1", ANY, b"sandboxes", ANY), TIMESTAMPS, value=decode_go_time),
    Rule(Category.SANDBOXES, (b"v1", ANY, b"sandboxes", ANY), _keys("spec"), value=decode_any),
    Rule(Category.SANDBOXES, (b"v1", ANY, b"sandboxes", ANY, b"runtime"), _keys("options"), value=decode_any),
    Rule(Category.SANDBOXES, (b"v1", ANY, b"sandboxes", ANY, b"extensions"), value=decode_any),

    Rule(Category.CONTENT, (b"v1", ANY, b"content", b"blob"), kind=EntryKind.BUCKET, key=normalize_digest),
    Rule(Category.CONTENT, (b"v1", ANY, b"content", b"blob", ANY), TIMESTAMPS, value=decode_go_time),
    Rule(Category.CONTENT, (b"v1", ANY, b"content", b"blob", ANY), _keys("size"), value=decode_varint),
    Rule(Category.INGESTS, (b"v1", ANY, b"content", b"ingests", ANY), _keys("expireat"), value=decode_go_time),
    Rule(Category.INGESTS, (b"v1", ANY, b"content", b"ingests", ANY), _keys("expected"), value=normalize_digest),

    Rule(Category.SNAPSHOTS, (b"v1", ANY, b"snapshots", ANY, ANY), TIMESTAMPS, value=decode_go_time),

    Rule(Category.LEASES, (b"v1", ANY, b"leases", ANY), _keys("createdat"), value=decode_go_time),
    Rule(Category.LEASES, (b"v1", ANY, b"leases", ANY, b"content"), key=normalize_digest),

    Rule(Category.METASTORE, (b"v1", b"snapshots", ANY), _keys("id"), value=decode_uvarint_exact),
    Rule(Category.METASTORE, (b"v1", b"snapshots", ANY), _keys("inodes", "size"), value=decode_varint),
    Rule(Category.METASTORE, (b"v1", b"snapshots", ANY), _keys("kind"), value=decode_snapshot_kind),
    Rule(Category.METASTORE, (b"v1", b"snapshots", ANY), TIMESTAMPS, value=decode_go_time),
    Rule(Category.METASTORE, (b"v1", b"parents"), key=decode_varint_pair),
)


class ContainerdMetaDecoder:
    """
    Renders the entries of containerd's bolt databases.

    The decoder holds no per-call state and can be shared freely.
    """
    name = "containerd"

    def __init__(self, rules: Sequence[Rule] = CONTAINERD_RULES):
        self.rules = tuple(rules)

    def match(self, path: BucketPath, key: bytes, is_bucket: bool) -> Optional[Rule]:
        kind = EntryKind.BUCKET if is_bucket else EntryKind.LEAF
        for rule in self.rules:
            if rule.matches(path, key, kind):
                return rule
        return None

    def decode(self, path: BucketPath, key: bytes, value: Optional[bytes],
               sequence: int = 0) -> DecodedRecord:
        """
        Renders one entry.

        Args:
            path (BucketPath): Bucket names from the root down to the entry's bucket.
            key (bytes): The entry key.
            value (Optional[bytes]): The leaf value, or None for a bucket marker.
            sequence (int): The sequence counter reported by the walker.

        Returns:
            DecodedRecord: The printable record; `value` is None for buckets.

        Raises:
            DecodeError: If a recognized field holds bytes of the wrong shape.
        """
        display_path = render_path(path)
        rule = self.match(path, key, value is None)

        if rule is None:
            return DecodedRecord(display_path, self._fallback_key(key, value, sequence),
                                 None if value is None else render_bytes(value))

        display_key = self._apply(rule, rule.key, key, display_path, key)
        if value is None:
            return DecodedRecord(display_path, display_key, None)
        return DecodedRecord(display_path, display_key, self._apply(rule, rule.value, value, display_path, key))

    @staticmethod
    def _fallback_key(key: bytes, value: Optional[bytes], sequence: int) -> str:
        # Buckets that hand out ids with NextSequence key their entries by the
        # 8-byte big-endian id.
        if value is not None and sequence > 0 and len(key) == 8:
            return str(decode_uint_be(key))
        return render_bytes(key)

    @staticmethod
    def _apply(rule: Rule, renderer: Optional[Renderer], data: bytes, display_path: str, key: bytes) -> str:
        if renderer is None:
            return render_bytes(data)
        try:
            return str(renderer(data))
        except ValueError as e:
            logger.debug(f"{rule.category.value} entry {display_path},{render_bytes(key)} failed to decode: {e}")
            raise DecodeError(display_path, render_bytes(key), str(e)) from e
