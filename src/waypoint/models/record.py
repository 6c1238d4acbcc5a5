"""Encoded record held in the writer queue.

:class:`EncodedRecord` is produced by :func:`~waypoint.line_protocol.encode`
and consumed by :class:`~waypoint.writer.BatchingWriter`.  It carries one
line-protocol line (no trailing newline) and the write-time embedded in it.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EncodedRecord:
    """One line-protocol line ready for a batched backend write.

    Attributes:
        line:       UTF-8 encoded line, without a trailing newline.
        write_time: Write-time in the configured precision, as written at
                    the end of ``line``.
    """

    line: bytes
    write_time: int

    def __len__(self) -> int:
        return len(self.line)
