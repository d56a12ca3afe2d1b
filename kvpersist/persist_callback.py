"""Writes Raft state changes to the write-ahead log before they take effect."""

from __future__ import annotations

import enum
import logging
from typing import Optional

from kvpersist.wal import LogEntryRecord, MetadataRecord, WalError, WriteAheadLog


class CommandType(enum.IntEnum):
    """Kind of command carried by a log entry."""

    NOOP = 0
    SET = 1
    DEL = 2


class WalPersistCallback:
    """Persists term/vote changes and log entries to a :class:`WriteAheadLog`.

    Failures are logged rather than raised; each method reports whether the
    record reached the log. Not thread-safe.
    """

    def __init__(self, wal: WriteAheadLog, logger: Optional[logging.Logger] = None) -> None:
        self._wal = wal
        self._logger = logger or logging.getLogger(__name__)

    def persist_metadata(self, term: int, voted_for: int) -> bool:
        """Append the current term and vote; True when written."""
        try:
            self._wal.append_metadata(MetadataRecord(term=term, voted_for=voted_for))
        except (WalError, OSError, ValueError, OverflowError) as exc:
            self._logger.error(
                "WalPersistCallback: failed to persist metadata (term=%d, voted_for=%d): %s",
                term,
                voted_for,
                exc,
            )
            return False
        self._logger.debug(
            "WalPersistCallback: persisted metadata (term=%d, voted_for=%d)", term, voted_for
        )
        return True

    def persist_entry(
        self,
        term: int,
        index: int,
        cmd_type: CommandType = CommandType.NOOP,
        key: str = "",
        value: str = "",
    ) -> bool:
        """Append one log entry; True when written."""
        rec = LogEntryRecord(
            term=term, index=index, cmd_type=int(cmd_type), key=key, value=value
        )
        try:
            self._wal.append_entry(rec)
        except (WalError, OSError, ValueError, OverflowError) as exc:
            self._logger.error(
                "WalPersistCallback: failed to persist entry (index=%d, term=%d): %s",
                index,
                term,
                exc,
            )
            return False
        self._logger.debug(
            "WalPersistCallback: persisted entry (index=%d, term=%d)", index, term
        )
        return True