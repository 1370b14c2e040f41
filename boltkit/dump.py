"""
Dumps every bucket and key of a bolt database as text lines.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Iterator, Optional, TextIO

from pydantic import BaseModel, Field, field_validator

from boltkit.exceptions import OpenError
from boltkit.records import SchemaDecoder
from boltkit.registry import CONTAINERD, SchemaRegistry, default_registry
from boltkit.sink import LineSink
from boltkit.store import BoltStore
from boltkit.walker import walk

logger = logging.getLogger(__name__)

SCHEMA_ENV_VAR = "BOLTKIT_SCHEMA"
TEMP_DIR_PREFIX = "bbolt-cli"


class DumpConfig(BaseModel):
    """
    Settings for one dump.

    Attributes:
        db_path (str): Path of the bolt database to dump.
        schema_name (str): Schema used to decode entries. Defaults to the
                           BOLTKIT_SCHEMA environment variable, else "containerd".
        copy_source (bool): Read from a private copy of the file. containerd
                            holds an exclusive lock on its database while running.
        log_file (Optional[str]): Also write log messages to this file.
        log_level (str): Name of the logging level.
    """
    db_path: str = Field(description="Path of the bolt database", min_length=1)
    schema_name: str = Field(
        default_factory=lambda: os.getenv(SCHEMA_ENV_VAR, CONTAINERD),
        description="Schema used to decode entries",
    )
    copy_source: bool = Field(default=True, description="Dump a private copy of the database")
    log_file: Optional[str] = Field(default=None, description="Optional log file")
    log_level: str = Field(default="INFO", description="Logging level name")

    @field_validator('db_path', 'schema_name')
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        """Ensure fields are not empty or just whitespace."""
        if not v or not v.strip():
            raise ValueError("Field cannot be empty or whitespace only")
        return v.strip()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown logging level '{v}'")
        return level


@dataclass
class DumpResult:
    """
    Outcome of a completed dump.

    Attributes:
        db_path (str): The database that was dumped.
        schema_name (str): The schema that was requested.
        schema_recognized (bool): False when the schema name was unknown and
                                  the no-op decoder produced no output.
        entries_visited (int): Entries reached by the walk.
        records_emitted (int): Lines written.
    """
    db_path: str
    schema_name: str
    schema_recognized: bool
    entries_visited: int
    records_emitted: int


@contextmanager
def private_copy(source: str) -> Iterator[str]:
    """
    Copies `source` into a fresh temporary directory and yields the copy's path.

    The copy is fsynced before it is yielded and the directory is removed on exit.

    Raises:
        OpenError: If the source cannot be read or the copy cannot be written.
    """
    with tempfile.TemporaryDirectory(prefix=TEMP_DIR_PREFIX) as temp_dir:
        target = os.path.join(temp_dir, os.path.basename(source))
        try:
            with open(source, "rb") as src, open(target, "wb") as tgt:
                shutil.copyfileobj(src, tgt)
                tgt.flush()
                os.fsync(tgt.fileno())
        except OSError as e:
            raise OpenError(f"failed to copy {source} to {target}: {e}") from e
        logger.debug(f"Copied {source} to {target}")
        yield target


def dump_store(store: BoltStore, decoder: SchemaDecoder, sink: LineSink) -> int:
    """
    Walks `store`, decodes each entry and emits the resulting records.

    Returns:
        int: The number of entries visited.

    Raises:
        WalkError: On the first entry that fails to decode or cannot be read.
    """
    def visit(path, key, value, sequence):
        record = decoder.decode(path, key, value, sequence)
        if record is not None:
            sink.emit(record)

    return walk(store, visit)


def run_dump(config: DumpConfig, registry: Optional[SchemaRegistry] = None,
             stream: Optional[TextIO] = None) -> DumpResult:
    """
    Dumps the database named by `config` to `stream` (stdout by default).

    Args:
        config (DumpConfig): What to dump and how.
        registry (SchemaRegistry, optional): Schemas to choose from. Defaults to `default_registry()`.
        stream (TextIO, optional): Where the lines go.

    Returns:
        DumpResult: Counts and whether the schema was recognized.

    Raises:
        OpenError: If the database cannot be copied or opened.
        WalkError: If the dump stopped on an entry.
    """
    if registry is None:
        registry = default_registry()

    recognized = registry.recognizes(config.schema_name)
    if not recognized:
        logger.warning(
            f"Schema '{config.schema_name}' is not recognized (known: {', '.join(registry.names())}); "
            f"no entries will be printed"
        )
    decoder = registry.resolve(config.schema_name)

    if not os.path.exists(config.db_path):
        raise OpenError(f"bolt database {config.db_path} does not exist")

    sink = LineSink(stream)
    source = private_copy(config.db_path) if config.copy_source else nullcontext(config.db_path)
    with source as path:
        with BoltStore.open(path) as store:
            visited = dump_store(store, decoder, sink)

    logger.info(f"Dumped {config.db_path}: {visited} entries visited, {sink.count} lines written")
    return DumpResult(
        db_path=config.db_path,
        schema_name=config.schema_name,
        schema_recognized=recognized,
        entries_visited=visited,
        records_emitted=sink.count,
    )
