# kvpersist

Durable on-disk state for a Raft-replicated key-value store. The package has
four modules:

- `kvpersist.wal` is an append-only write-ahead log with a CRC on every
  record. It stores Raft metadata (current term and vote) and log entries.
  Each append is synced to disk before the call returns.
- `kvpersist.snapshot` saves and loads full-state snapshots of a key-value
  map. Files are written atomically: the bytes go to `<path>.tmp`, which is
  then renamed into place.
- `kvpersist.persist_callback` records Raft state changes in the WAL.
- `kvpersist.snapshot_io` ties snapshots, the WAL and the live store
  together.

## Installation

```
pip install kvpersist
```

The package has no runtime dependencies. To run the tests, install the
`test` extra (`pip install kvpersist[test]`) and run `pytest`.

## Write-ahead log

```python
from kvpersist.wal import WriteAheadLog, MetadataRecord, LogEntryRecord, replay_wal

with WriteAheadLog("data/wal.bin") as wal:
    wal.append_metadata(MetadataRecord(term=1, voted_for=-1))
    wal.append_entry(LogEntryRecord(term=1, index=1, cmd_type=1, key="a", value="1"))
    wal.append_entry(LogEntryRecord(term=1, index=2, cmd_type=1, key="b", value="2"))
    wal.truncate_suffix(1)  # drop entries with index > 1

result = replay_wal("data/wal.bin")
print(result.metadata, [e.key for e in result.entries])
```

`WriteAheadLog.open()` creates the file if it does not exist, along with any
missing parent directories, and writes a fresh header. An existing file has
its header checked instead. You can call `open()` and `close()` yourself, or
use the log as a context manager. `is_open` and `path` are read-only
properties.

- `append_metadata(rec)` and `append_entry(rec)` raise `WalError` if the log
  is not open.
- `truncate_suffix(after_index)` keeps the latest metadata record and the
  entries whose index is at or below `after_index`.
- `rewrite(metadata, entries)` replaces the file atomically with exactly the
  records you give it. Pass `None` as `metadata` to write no metadata record.
  The log is reopened afterwards.

The file starts with the header `KVWAL` and a version number (u16). After the
header come the records:

- metadata: `[0x01][term u64][voted_for i32][crc32 u32]`
- entry: `[0x02][total_length u32][term u64][index u64][cmd_type u8][key_len u16][key][value_len u32][value][crc32 u32]`

All integers are little-endian. Keys and values are stored as UTF-8.
`serialise_metadata` and `serialise_entry` return the encoded bytes of one
record. `crc32` is the same checksum that zlib computes.

`replay_wal(path)` returns a `WalReplayResult` holding the last metadata
record (or `None` if there is none) and every entry, in order. It stops
quietly at a truncated tail or at an unknown record type. A checksum mismatch
raises `WalCorruptionError`. A missing, empty or badly headed file raises
`WalError`, or `OSError` if the file cannot be read.

## Snapshots

```python
from kvpersist.snapshot import save_snapshot, load_snapshot, snapshot_exists

save_snapshot("data/snapshot.bin", {"x": "10", "y": "20"}, 10, 3)
if snapshot_exists("data/snapshot.bin"):
    loaded = load_snapshot("data/snapshot.bin")
    print(loaded.metadata.last_included_index, loaded.data)
```

A snapshot file has this layout:

```
"KVSS" | version u16 | last_included_index u64 | last_included_term u64 | count u32
  | (key_len u16, key, value_len u32, value) x count | crc32 u32
```

Entries are sorted by key, so the same data always produces the same bytes.
`load_snapshot` returns a `SnapshotLoadResult` with a `SnapshotMetadata` and
a `dict` of the contents. A file that is too small, has a bad magic or
version, is truncated, or fails its CRC raises `SnapshotError`.
`snapshot_exists` is true only for an existing regular file.

## Persist callback

```python
import logging
from kvpersist.persist_callback import WalPersistCallback, CommandType

callback = WalPersistCallback(wal, logging.getLogger("node-1"))
callback.persist_metadata(term=2, voted_for=3)
callback.persist_entry(2, 5, CommandType.SET, "k", "v")
```

Both methods return `True` when the record was written. They return `False`
on failure, such as a closed log, an I/O error or an oversized key, and log
the error rather than raising it. If you omit the logger, the module's own
logger is used. `CommandType` has the values `NOOP`, `SET` and `DEL`.

## Snapshot I/O

`SnapshotIO(data_dir, storage, wal, logger=None)` keeps `snapshot.bin` and
`cluster_config.pb` in `data_dir`. The `storage` argument is the live state
machine: any mutable mapping of string keys to string values, such as a plain
`dict`.

- `create_snapshot(index, term, config=None)` saves the current contents of
  `storage`. It then rewrites the WAL, keeping its latest metadata record and
  only the entries after `index`.
- `install_snapshot(raw_bytes, index, term, config=None)` writes the snapshot
  bytes received from a leader and replaces the contents of `storage` with
  them. It then rewrites the WAL with no metadata and no entries. If the
  snapshot's own index or term differs from the arguments, only a warning is
  logged.
- `load_snapshot_for_sending()` returns a `SnapshotData` holding the raw file
  bytes, the snapshot's index and term, and the stored cluster configuration.
  If there is no valid snapshot, the `SnapshotData` is empty.
- `load_cluster_config()` returns the stored configuration bytes, or `None`.

These methods return `True` or `False` and log failures rather than raising
them. Where `config` is given, it is stored as opaque bytes next to the
snapshot.

## What this package does not do

The package stores state; it is not a server. It has no network layer, no
Raft consensus logic and no key-value store of its own. Cluster
configurations are never parsed: they are kept and returned as raw bytes, and
encoding or decoding them is up to the caller.