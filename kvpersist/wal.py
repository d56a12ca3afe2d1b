"""Append-only write-ahead log holding Raft metadata and log entries.

File layout::

    [magic: "KVWAL" (5B)][version: u16 LE = 1]
    then any number of records:
    [type: u8 = 0x01][term: u64 LE][voted_for: i32 LE][crc32: u32 LE]
    [type: u8 = 0x02][total_length: u32 LE][term: u64 LE][index: u64 LE]
        [cmd_type: u8][key_len: u16 LE][key][value_len: u32 LE][value]
        [crc32: u32 LE]

Every record's CRC covers the bytes from its type byte through its last field.
"""

from __future__ import annotations

import logging
import os
import struct
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Union

logger = logging.getLogger(__name__)

RECORD_TYPE_META = 0x01
RECORD_TYPE_ENTRY = 0x02

WAL_MAGIC = b"KVWAL"
WAL_VERSION = 1
WAL_HEADER = WAL_MAGIC + struct.pack("<H", WAL_VERSION)
WAL_HEADER_SIZE = len(WAL_HEADER)

_META_BODY = struct.Struct("<QiI")  # term, voted_for, crc
_ENTRY_FIXED = struct.Struct("<QQBH")  # term, index, cmd_type, key_len
_U32 = struct.Struct("<I")
_MAX_KEY_LEN = 0xFFFF
_MAX_VALUE_LEN = 0xFFFFFFFF

_sync = getattr(os, "fdatasync", os.fsync)

PathLike = Union[str, "os.PathLike[str]"]


class WalError(Exception):
    """The WAL file is missing its header, has a bad header, or is not open."""


class WalCorruptionError(WalError):
    """A record's stored CRC does not match its contents."""


def _encode(text: Union[str, bytes]) -> bytes:
    if isinstance(text, bytes):
        return text
    return text.encode("utf-8", "surrogateescape")


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


@dataclass
class MetadataRecord:
    """Persisted current term and vote (-1 means no vote)."""

    term: int = 0
    voted_for: int = -1


@dataclass
class LogEntryRecord:
    """A single Raft log entry; cmd_type is 0=NOOP, 1=SET, 2=DEL."""

    term: int = 0
    index: int = 0
    cmd_type: int = 0
    key: str = ""
    value: str = ""


@dataclass
class WalReplayResult:
    """The latest metadata record and every log entry found in a WAL."""

    metadata: Optional[MetadataRecord] = None
    entries: list[LogEntryRecord] = field(default_factory=list)


def crc32(data: bytes) -> int:
    """CRC32 with the ISO 3309 polynomial (same as zlib)."""
    return zlib.crc32(data) & 0xFFFFFFFF


def _with_crc(body: bytes) -> bytes:
    return body + _U32.pack(crc32(body))


def serialise_metadata(rec: MetadataRecord) -> bytes:
    """Encode a metadata record, type byte and CRC included."""
    body = struct.pack("<BQi", RECORD_TYPE_META, rec.term, rec.voted_for)
    return _with_crc(body)


def serialise_entry(rec: LogEntryRecord) -> bytes:
    """Encode a log entry record, type byte and CRC included."""
    key = _encode(rec.key)
    value = _encode(rec.value)
    if len(key) > _MAX_KEY_LEN:
        raise ValueError(f"key too long for WAL record ({len(key)} bytes)")
    if len(value) > _MAX_VALUE_LEN:
        raise ValueError(f"value too long for WAL record ({len(value)} bytes)")
    total_length = _ENTRY_FIXED.size + len(key) + _U32.size + len(value)
    body = b"".join(
        (
            struct.pack("<BI", RECORD_TYPE_ENTRY, total_length),
            _ENTRY_FIXED.pack(rec.term, rec.index, rec.cmd_type, len(key)),
            key,
            _U32.pack(len(value)),
            value,
        )
    )
    return _with_crc(body)


def _check_header(header: bytes) -> None:
    if len(header) < WAL_HEADER_SIZE:
        raise WalError("WAL file too short for header")
    if header[: len(WAL_MAGIC)] != WAL_MAGIC:
        raise WalError("WAL file has invalid magic")
    (version,) = struct.unpack_from("<H", header, len(WAL_MAGIC))
    if version != WAL_VERSION:
        raise WalError(f"unsupported WAL version {version}")


def _parse_entry(data: bytes, start: int, pos: int) -> tuple[Optional[LogEntryRecord], int]:
    """Parse an entry record whose type byte sits at ``start``.

    Returns ``(None, pos)`` when the record is truncated.
    """
    end = len(data)
    if pos + _U32.size > end:
        logger.warning("WAL: truncated entry record (total_length)")
        return None, pos
    (total_length,) = _U32.unpack_from(data, pos)
    pos += _U32.size
    if pos + total_length + _U32.size > end:
        logger.warning("WAL: truncated entry record (payload)")
        return None, pos

    if pos + _ENTRY_FIXED.size > end:
        return None, pos
    term, index, cmd_type, key_len = _ENTRY_FIXED.unpack_from(data, pos)
    pos += _ENTRY_FIXED.size

    if pos + key_len > end:
        return None, pos
    key = data[pos : pos + key_len]
    pos += key_len

    if pos + _U32.size > end:
        return None, pos
    (value_len,) = _U32.unpack_from(data, pos)
    pos += _U32.size
    if pos + value_len > end:
        return None, pos
    value = data[pos : pos + value_len]
    pos += value_len

    if pos + _U32.size > end:
        return None, pos
    (stored_crc,) = _U32.unpack_from(data, pos)
    if crc32(data[start:pos]) != stored_crc:
        logger.warning("WAL: CRC mismatch in entry record at index %d", index)
        raise WalCorruptionError(f"CRC mismatch in entry record at index {index}")
    pos += _U32.size

    record = LogEntryRecord(
        term=term, index=index, cmd_type=cmd_type, key=_decode(key), value=_decode(value)
    )
    return record, pos


def replay_wal(path: PathLike) -> WalReplayResult:
    """Read every record from the WAL at ``path``.

    Only the last metadata record is kept. Reading stops quietly at a
    truncated tail or an unknown record type; a CRC mismatch raises
    :class:`WalCorruptionError`.
    """
    data = Path(path).read_bytes()
    if not data:
        raise WalError("WAL file is empty")
    _check_header(data)

    result = WalReplayResult()
    pos = WAL_HEADER_SIZE
    end = len(data)
    while pos < end:
        start = pos
        record_type = data[pos]
        pos += 1

        if record_type == RECORD_TYPE_META:
            if pos + _META_BODY.size > end:
                logger.warning("WAL: truncated metadata record")
                break
            term, voted_for, stored_crc = _META_BODY.unpack_from(data, pos)
            pos += _META_BODY.size
            if crc32(data[start : pos - _U32.size]) != stored_crc:
                logger.warning("WAL: CRC mismatch in metadata record")
                raise WalCorruptionError("CRC mismatch in metadata record")
            result.metadata = MetadataRecord(term=term, voted_for=voted_for)

        elif record_type == RECORD_TYPE_ENTRY:
            entry, pos = _parse_entry(data, start, pos)
            if entry is None:
                break
            result.entries.append(entry)

        else:
            logger.warning("WAL: unknown record type 0x%02X", record_type)
            break

    return result


def _write_all(stream: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = stream.write(view)
        view = view[written:]


class WriteAheadLog:
    """Append-only WAL file; every append is synced to disk before returning.

    Not thread-safe: callers must serialise access.
    """

    def __init__(self, path: PathLike) -> None:
        self._path = Path(path)
        self._file: Optional[BinaryIO] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self) -> None:
        """Open the WAL, creating it with a fresh header if needed."""
        if self._file is not None:
            return

        existed = self._path.exists()
        if not existed:
            self._path.parent.mkdir(parents=True, exist_ok=True)

        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        self._file = os.fdopen(fd, "r+b", buffering=0)
        try:
            if not existed or self._path.stat().st_size == 0:
                self._write_bytes(WAL_HEADER)
            else:
                self._file.seek(0)
                _check_header(self._file.read(WAL_HEADER_SIZE))
                self._file.seek(0, os.SEEK_END)
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        """Close the WAL file; closing twice is harmless."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "WriteAheadLog":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> BinaryIO:
        if self._file is None:
            raise WalError("WAL is not open")
        return self._file

    def _write_bytes(self, data: bytes) -> None:
        stream = self._require_open()
        _write_all(stream, data)
        _sync(stream.fileno())

    def append_metadata(self, rec: MetadataRecord) -> None:
        """Append a term/vote record."""
        self._require_open()
        self._write_bytes(serialise_metadata(rec))

    def append_entry(self, rec: LogEntryRecord) -> None:
        """Append a log entry record."""
        self._require_open()
        self._write_bytes(serialise_entry(rec))

    def truncate_suffix(self, after_index: int) -> None:
        """Drop every entry whose index is greater than ``after_index``."""
        self._require_open()
        self.close()
        current = replay_wal(self._path)
        kept = [entry for entry in current.entries if entry.index <= after_index]
        self.rewrite(current.metadata, kept)

    def rewrite(
        self, metadata: Optional[MetadataRecord], entries: Iterable[LogEntryRecord]
    ) -> None:
        """Replace the WAL atomically with the given metadata and entries, then reopen."""
        self.close()
        tmp_path = self._path.with_name(self._path.name + ".tmp")

        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(WAL_HEADER)
            if metadata is not None:
                tmp.write(serialise_metadata(metadata))
            for entry in entries:
                tmp.write(serialise_entry(entry))
            tmp.flush()
            _sync(tmp.fileno())

        os.replace(tmp_path, self._path)
        self.open()