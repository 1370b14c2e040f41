"""
Maps schema names to decoders.
"""

import logging
from types import MappingProxyType
from typing import List, Mapping, Optional

from boltkit.containerd import ContainerdMetaDecoder
from boltkit.records import BucketPath, DecodedRecord, SchemaDecoder, render_bytes, render_path

logger = logging.getLogger(__name__)

CONTAINERD = "containerd"
RAW = "raw"


class NoopDecoder:
    """Declines every entry. Returned for schema names nobody registered."""
    name = "noop"

    def decode(self, path: BucketPath, key: bytes, value: Optional[bytes],
               sequence: int = 0) -> Optional[DecodedRecord]:
        return None


class RawDecoder:
    """Renders every entry as printable text or hex, without schema rules."""
    name = RAW

    def decode(self, path: BucketPath, key: bytes, value: Optional[bytes],
               sequence: int = 0) -> Optional[DecodedRecord]:
        return DecodedRecord(render_path(path), render_bytes(key),
                             None if value is None else render_bytes(value))


NOOP_DECODER = NoopDecoder()


class SchemaRegistry:
    """
    A fixed mapping of schema names to decoders.

    The mapping is copied and frozen at construction, so a registry can be
    shared by any number of dumps.
    """

    def __init__(self, decoders: Mapping[str, SchemaDecoder]):
        self._decoders = MappingProxyType(dict(decoders))

    def resolve(self, name: str) -> SchemaDecoder:
        """
        Returns the decoder registered under `name`.

        Unknown names resolve to a decoder that produces no records, so a dump
        with an unknown schema succeeds with empty output. Use `recognizes`
        to tell the two cases apart.
        """
        decoder = self._decoders.get(name)
        if decoder is None:
            logger.debug(f"Schema '{name}' is not registered; using the no-op decoder")
            return NOOP_DECODER
        return decoder

    def recognizes(self, name: str) -> bool:
        return name in self._decoders

    def names(self) -> List[str]:
        return sorted(self._decoders)

    def __contains__(self, name: str) -> bool:
        return self.recognizes(name)

    def __len__(self) -> int:
        return len(self._decoders)


def default_registry() -> SchemaRegistry:
    """Builds the registry of the schemas shipped with BoltKit."""
    return SchemaRegistry({
        CONTAINERD: ContainerdMetaDecoder(),
        RAW: RawDecoder(),
    })
