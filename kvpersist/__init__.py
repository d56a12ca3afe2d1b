"""Write-ahead log, snapshots and snapshot I/O for a Raft-replicated key-value store."""

__version__ = "0.1.0"
__all__ = ["wal", "snapshot", "persist_callback", "snapshot_io"]