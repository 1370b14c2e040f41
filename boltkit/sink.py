"""
Writes decoded records as lines of text.
"""

import sys
from typing import Optional, TextIO

from boltkit.records import DecodedRecord


def format_record(record: DecodedRecord) -> str:
    """
    Formats a record as `path,key` (buckets) or `path,key=value` (leaves).

    Separators inside the path, key or value are not escaped, so a line is
    only unambiguous when the rendered text holds no `,` or `=`.
    """
    if record.value is None:
        return f"{record.path},{record.key}"
    return f"{record.path},{record.key}={record.value}"


class LineSink:
    """
    Streams one line per record to a text stream.

    Each line is written and flushed as soon as it is emitted; the sink
    keeps nothing but a count.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream if stream is not None else sys.stdout
        self.count = 0

    def emit(self, record: DecodedRecord):
        self.stream.write(format_record(record) + "\n")
        self.stream.flush()
        self.count += 1
