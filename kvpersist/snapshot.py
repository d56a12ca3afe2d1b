"""Full-state snapshots of the key-value store.

File layout::

    [magic: "KVSS" (4B)][version: u16 LE = 1]
    [last_included_index: u64 LE][last_included_term: u64 LE]
    [entry_count: u32 LE]
      [key_length: u16 LE][key][value_length: u32 LE][value]  x entry_count
    [crc32: u32 LE]     CRC of everything from magic through the last value

Snapshots are written atomically: to ``<path>.tmp`` first, then renamed.
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Union

from kvpersist.wal import crc32

logger = logging.getLogger(__name__)

SNAPSHOT_MAGIC = b"KVSS"
SNAPSHOT_VERSION = 1
SNAPSHOT_HEADER_SIZE = len(SNAPSHOT_MAGIC) + 2
SNAPSHOT_FILENAME = "snapshot.bin"

_PREFIX = struct.Struct("<4sHQQI")  # magic, version, index, term, entry_count
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_MIN_SIZE = _PREFIX.size + _U32.size  # 30 bytes
_MAX_KEY_LEN = 0xFFFF
_MAX_VALUE_LEN = 0xFFFFFFFF
_MAX_ENTRIES = 0xFFFFFFFF

PathLike = Union[str, "os.PathLike[str]"]


class SnapshotError(Exception):
    """A snapshot file is malformed, truncated or fails its CRC check."""


@dataclass
class SnapshotMetadata:
    """The last log index and term that a snapshot covers."""

    last_included_index: int = 0
    last_included_term: int = 0


@dataclass
class SnapshotLoadResult:
    """Metadata and key-value contents read from a snapshot file."""

    metadata: SnapshotMetadata = field(default_factory=SnapshotMetadata)
    data: dict[str, str] = field(default_factory=dict)


def _encode(text: Union[str, bytes]) -> bytes:
    if isinstance(text, bytes):
        return text
    return text.encode("utf-8", "surrogateescape")


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _build(data: Mapping[str, str], index: int, term: int) -> bytes:
    if len(data) > _MAX_ENTRIES:
        raise ValueError(f"too many entries for a snapshot ({len(data)})")
    items = sorted((_encode(k), _encode(v)) for k, v in data.items())
    parts = [_PREFIX.pack(SNAPSHOT_MAGIC, SNAPSHOT_VERSION, index, term, len(items))]
    for key, value in items:
        if len(key) > _MAX_KEY_LEN:
            raise ValueError(f"key too long for snapshot ({len(key)} bytes)")
        if len(value) > _MAX_VALUE_LEN:
            raise ValueError(f"value too long for snapshot ({len(value)} bytes)")
        parts += (_U16.pack(len(key)), key, _U32.pack(len(value)), value)
    body = b"".join(parts)
    return body + _U32.pack(crc32(body))


def save_snapshot(
    path: PathLike,
    data: Mapping[str, str],
    last_included_index: int,
    last_included_term: int,
) -> None:
    """Write ``data`` as a snapshot at ``path`` atomically.

    Entries are stored sorted by key so equal contents give equal files.
    """
    payload = _build(data, last_included_index, last_included_term)
    target = Path(path)
    tmp_path = target.with_name(target.name + ".tmp")

    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    except OSError as exc:
        logger.error("Snapshot: failed to open tmp file %s: %s", tmp_path, exc)
        raise

    try:
        with os.fdopen(fd, "wb") as stream:
            stream.write(payload)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(tmp_path, target)
    except OSError as exc:
        logger.error("Snapshot: write failed: %s", exc)
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info(
        "Snapshot: saved %d entries at index=%d term=%d to %s",
        len(data),
        last_included_index,
        last_included_term,
        target,
    )


def _truncated(what: str) -> SnapshotError:
    logger.error("Snapshot: truncated at %s", what)
    return SnapshotError(f"snapshot truncated at {what}")


def load_snapshot(path: PathLike) -> SnapshotLoadResult:
    """Read and validate the snapshot at ``path`` (magic, version and CRC)."""
    raw = Path(path).read_bytes()
    if len(raw) < _MIN_SIZE:
        logger.error("Snapshot: file too small (%d bytes)", len(raw))
        raise SnapshotError(f"snapshot file too small ({len(raw)} bytes)")

    magic, version, index, term, entry_count = _PREFIX.unpack_from(raw, 0)
    if magic != SNAPSHOT_MAGIC:
        logger.error("Snapshot: invalid magic")
        raise SnapshotError("invalid snapshot magic")
    if version != SNAPSHOT_VERSION:
        logger.error("Snapshot: unsupported version %d", version)
        raise SnapshotError(f"unsupported snapshot version {version}")

    end = len(raw)
    pos = _PREFIX.size
    data: dict[str, str] = {}
    for i in range(entry_count):
        if pos + _U16.size > end:
            raise _truncated(f"entry {i} key_length")
        (key_len,) = _U16.unpack_from(raw, pos)
        pos += _U16.size
        if pos + key_len > end:
            raise _truncated(f"entry {i} key")
        key = raw[pos : pos + key_len]
        pos += key_len

        if pos + _U32.size > end:
            raise _truncated(f"entry {i} value_length")
        (value_len,) = _U32.unpack_from(raw, pos)
        pos += _U32.size
        if pos + value_len > end:
            raise _truncated(f"entry {i} value")
        value = raw[pos : pos + value_len]
        pos += value_len

        data.setdefault(_decode(key), _decode(value))

    if pos + _U32.size > end:
        raise _truncated("CRC")
    (stored_crc,) = _U32.unpack_from(raw, pos)
    computed_crc = crc32(raw[:pos])
    if stored_crc != computed_crc:
        logger.error(
            "Snapshot: CRC mismatch (stored=%#010x, computed=%#010x)",
            stored_crc,
            computed_crc,
        )
        raise SnapshotError("snapshot CRC mismatch")

    logger.info(
        "Snapshot: loaded %d entries at index=%d term=%d from %s",
        len(data),
        index,
        term,
        path,
    )
    return SnapshotLoadResult(
        metadata=SnapshotMetadata(last_included_index=index, last_included_term=term),
        data=data,
    )


def snapshot_exists(path: PathLike) -> bool:
    """True when ``path`` names an existing regular file."""
    return Path(path).is_file()