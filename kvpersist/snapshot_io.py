"""Snapshot creation, installation and transfer for a Raft node.

Ties together the snapshot file format, the write-ahead log (rewritten after a
snapshot so it only holds entries past the snapshot point) and the live
key-value state machine.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import MutableMapping, Optional, Union

from kvpersist.snapshot import (
    SNAPSHOT_FILENAME,
    SnapshotError,
    load_snapshot,
    save_snapshot,
    snapshot_exists,
)
from kvpersist.wal import WalError, WriteAheadLog, replay_wal

CONFIG_FILENAME = "cluster_config.pb"

PathLike = Union[str, "os.PathLike[str]"]

_FAILURES = (OSError, SnapshotError, WalError, ValueError, OverflowError)


@dataclass
class SnapshotData:
    """A snapshot file's raw bytes plus the metadata needed to send it."""

    data: bytes = b""
    last_included_index: int = 0
    last_included_term: int = 0
    config: Optional[bytes] = None


def _atomic_write(path: Path, payload: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "wb") as stream:
        stream.write(payload)
        stream.flush()
    os.replace(tmp_path, path)


class SnapshotIO:
    """Snapshot storage for one node's data directory.

    ``storage`` is the live key-value state machine; any mutable mapping of
    string keys to string values works. Cluster configurations are handled
    as opaque serialized bytes and stored next to the snapshot file.
    Not thread-safe.
    """

    def __init__(
        self,
        data_dir: PathLike,
        storage: MutableMapping[str, str],
        wal: WriteAheadLog,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        directory = Path(data_dir)
        self.snapshot_path = directory / SNAPSHOT_FILENAME
        self.config_path = directory / CONFIG_FILENAME
        self._storage = storage
        self._wal = wal
        self._logger = logger or logging.getLogger(__name__)

    def _save_config(self, config: bytes) -> None:
        try:
            _atomic_write(self.config_path, bytes(config))
        except OSError as exc:
            self._logger.warning("SnapshotIO: failed to write cluster config: %s", exc)
            return
        self._logger.debug("SnapshotIO: saved cluster config (%d bytes)", len(config))

    def load_snapshot_for_sending(self) -> SnapshotData:
        """Read the snapshot file for transfer; empty data if there is none."""
        if not snapshot_exists(self.snapshot_path):
            self._logger.debug("SnapshotIO: no snapshot file at %s", self.snapshot_path)
            return SnapshotData()

        try:
            raw = self.snapshot_path.read_bytes()
        except OSError as exc:
            self._logger.error(
                "SnapshotIO: failed to open snapshot file %s: %s", self.snapshot_path, exc
            )
            return SnapshotData()

        try:
            result = load_snapshot(self.snapshot_path)
        except _FAILURES as exc:
            self._logger.error("SnapshotIO: failed to parse snapshot: %s", exc)
            return SnapshotData()

        config = self.load_cluster_config()
        meta = result.metadata
        self._logger.debug(
            "SnapshotIO: loaded snapshot for sending (index=%d, term=%d, %d bytes, config=%s)",
            meta.last_included_index,
            meta.last_included_term,
            len(raw),
            "yes" if config is not None else "no",
        )
        return SnapshotData(
            data=raw,
            last_included_index=meta.last_included_index,
            last_included_term=meta.last_included_term,
            config=config,
        )

    def install_snapshot(
        self,
        data: bytes,
        last_included_index: int,
        last_included_term: int,
        config: Optional[bytes] = None,
    ) -> bool:
        """Install snapshot bytes received from the leader; True on success.

        The bytes are written to disk, loaded back into storage (replacing its
        contents), the WAL is rewritten keeping no metadata and no entries, and
        ``config`` is persisted if given.
        """
        try:
            _atomic_write(self.snapshot_path, bytes(data))
        except OSError as exc:
            self._logger.error("SnapshotIO: failed to write snapshot: %s", exc)
            return False

        try:
            result = load_snapshot(self.snapshot_path)
        except _FAILURES as exc:
            self._logger.error("SnapshotIO: failed to load installed snapshot: %s", exc)
            return False

        meta = result.metadata
        if (
            meta.last_included_index != last_included_index
            or meta.last_included_term != last_included_term
        ):
            self._logger.warning(
                "SnapshotIO: snapshot metadata mismatch "
                "(expected index=%d term=%d, got index=%d term=%d)",
                last_included_index,
                last_included_term,
                meta.last_included_index,
                meta.last_included_term,
            )

        self._storage.clear()
        self._storage.update(result.data)

        try:
            self._wal.rewrite(None, [])
        except _FAILURES as exc:
            self._logger.error("SnapshotIO: failed to rewrite WAL: %s", exc)
            return False

        if config is not None:
            self._save_config(config)

        self._logger.info(
            "SnapshotIO: installed snapshot (index=%d, term=%d, %d keys)",
            last_included_index,
            last_included_term,
            len(result.data),
        )
        return True

    def create_snapshot(
        self,
        last_included_index: int,
        last_included_term: int,
        config: Optional[bytes] = None,
    ) -> bool:
        """Snapshot the current storage and compact the WAL; True on success.

        WAL entries with index at or below ``last_included_index`` are dropped;
        the latest metadata record is kept.
        """
        data = dict(self._storage)
        try:
            save_snapshot(self.snapshot_path, data, last_included_index, last_included_term)
        except _FAILURES as exc:
            self._logger.error("SnapshotIO: failed to save snapshot: %s", exc)
            return False

        try:
            replay = replay_wal(self._wal.path)
        except _FAILURES as exc:
            self._logger.error("SnapshotIO: failed to replay WAL for rewrite: %s", exc)
            return False

        remaining = [e for e in replay.entries if e.index > last_included_index]
        try:
            self._wal.rewrite(replay.metadata, remaining)
        except _FAILURES as exc:
            self._logger.error("SnapshotIO: failed to rewrite WAL: %s", exc)
            return False

        if config is not None:
            self._save_config(config)

        self._logger.info(
            "SnapshotIO: created snapshot (index=%d, term=%d, %d keys, "
            "%d WAL entries remaining)",
            last_included_index,
            last_included_term,
            len(data),
            len(remaining),
        )
        return True

    def load_cluster_config(self) -> Optional[bytes]:
        """Return the persisted cluster configuration, or None if there is none."""
        if not self.config_path.exists():
            return None
        try:
            config = self.config_path.read_bytes()
        except OSError as exc:
            self._logger.warning(
                "SnapshotIO: failed to open cluster config file %s: %s", self.config_path, exc
            )
            return None
        self._logger.debug("SnapshotIO: loaded cluster config (%d bytes)", len(config))
        return config