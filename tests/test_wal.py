import struct

import pytest

from kvpersist.wal import (
    RECORD_TYPE_ENTRY,
    RECORD_TYPE_META,
    WAL_MAGIC,
    LogEntryRecord,
    MetadataRecord,
    WalCorruptionError,
    WalError,
    WalReplayResult,
    WriteAheadLog,
    crc32,
    replay_wal,
    serialise_entry,
    serialise_metadata,
)


@pytest.fixture
def wal_path(tmp_path):
    return tmp_path / "wal.bin"


def _entry(index, key="k", value="v", term=1, cmd_type=1):
    return LogEntryRecord(term=term, index=index, cmd_type=cmd_type, key=key, value=value)


def test_crc32_check_value():
    assert crc32(b"123456789") == 0xCBF43926


def test_crc32_empty():
    assert crc32(b"") == 0


def test_serialise_metadata_layout():
    data = serialise_metadata(MetadataRecord(term=7, voted_for=3))
    assert len(data) == 17
    assert data[0] == RECORD_TYPE_META
    assert struct.unpack_from("<Qi", data, 1) == (7, 3)
    assert struct.unpack_from("<I", data, 13)[0] == crc32(data[:13])


def test_serialise_metadata_negative_vote():
    data = serialise_metadata(MetadataRecord(term=1))
    assert struct.unpack_from("<i", data, 9)[0] == -1


def test_serialise_entry_layout():
    data = serialise_entry(_entry(5, key="ab", value="xyz", term=2))
    assert data[0] == RECORD_TYPE_ENTRY
    total_length = struct.unpack_from("<I", data, 1)[0]
    assert len(data) == 1 + 4 + total_length + 4
    assert struct.unpack_from("<QQBH", data, 5) == (2, 5, 1, 2)
    assert data[24:26] == b"ab"
    assert struct.unpack_from("<I", data, 26)[0] == 3
    assert data[30:33] == b"xyz"
    assert struct.unpack_from("<I", data, len(data) - 4)[0] == crc32(data[:-4])


def test_serialise_entry_key_too_long():
    with pytest.raises(ValueError):
        serialise_entry(_entry(1, key="x" * 70000))


def test_open_creates_header(wal_path):
    wal = WriteAheadLog(wal_path)
    wal.open()
    wal.close()
    data = wal_path.read_bytes()
    assert data[:5] == WAL_MAGIC
    assert struct.unpack_from("<H", data, 5)[0] == 1
    assert len(data) == 7


def test_open_creates_parent_directories(tmp_path):
    path = tmp_path / "a" / "b" / "wal.bin"
    with WriteAheadLog(path) as wal:
        assert wal.is_open
    assert path.exists()


def test_is_open_and_close(wal_path):
    wal = WriteAheadLog(wal_path)
    assert wal.is_open is False
    wal.open()
    assert wal.is_open is True
    wal.close()
    assert wal.is_open is False
    assert wal.path == wal_path


def test_context_manager_closes(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(_entry(1))
    assert wal.is_open is False
    assert len(replay_wal(wal_path).entries) == 1


def test_append_and_replay_round_trip(wal_path):
    entries = [_entry(1, "a", "1"), _entry(2, "b", "2"), _entry(3, "c", "3", cmd_type=2)]
    with WriteAheadLog(wal_path) as wal:
        wal.append_metadata(MetadataRecord(term=1, voted_for=-1))
        for e in entries:
            wal.append_entry(e)
    result = replay_wal(wal_path)
    assert result.metadata == MetadataRecord(term=1, voted_for=-1)
    assert result.entries == entries


def test_replay_keeps_latest_metadata(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_metadata(MetadataRecord(term=1, voted_for=2))
        wal.append_metadata(MetadataRecord(term=5, voted_for=3))
    assert replay_wal(wal_path).metadata == MetadataRecord(term=5, voted_for=3)


def test_replay_without_records(wal_path):
    with WriteAheadLog(wal_path):
        pass
    assert replay_wal(wal_path) == WalReplayResult()


def test_reopen_appends(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(_entry(1))
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(_entry(2))
    assert [e.index for e in replay_wal(wal_path).entries] == [1, 2]


def test_unicode_and_empty_values_round_trip(wal_path):
    entry = _entry(1, key="ключ", value="")
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(entry)
    assert replay_wal(wal_path).entries == [entry]


def test_append_when_closed_raises(wal_path):
    wal = WriteAheadLog(wal_path)
    with pytest.raises(WalError):
        wal.append_entry(_entry(1))
    with pytest.raises(WalError):
        wal.append_metadata(MetadataRecord())


def test_truncate_suffix_when_closed_raises(wal_path):
    with pytest.raises(WalError):
        WriteAheadLog(wal_path).truncate_suffix(1)


def test_open_rejects_bad_magic(wal_path):
    wal_path.write_bytes(b"NOTWAL\x01\x00")
    wal = WriteAheadLog(wal_path)
    with pytest.raises(WalError):
        wal.open()
    assert wal.is_open is False


def test_open_rejects_bad_version(wal_path):
    wal_path.write_bytes(WAL_MAGIC + struct.pack("<H", 2))
    with pytest.raises(WalError):
        WriteAheadLog(wal_path).open()


def test_replay_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        replay_wal(tmp_path / "missing.bin")


def test_replay_empty_file(wal_path):
    wal_path.write_bytes(b"")
    with pytest.raises(WalError):
        replay_wal(wal_path)


def test_replay_bad_version(wal_path):
    wal_path.write_bytes(WAL_MAGIC + struct.pack("<H", 9))
    with pytest.raises(WalError):
        replay_wal(wal_path)


def test_replay_detects_entry_corruption(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(_entry(1, "key", "value"))
    data = bytearray(wal_path.read_bytes())
    data[-6] ^= 0xFF
    wal_path.write_bytes(bytes(data))
    with pytest.raises(WalCorruptionError):
        replay_wal(wal_path)


def test_replay_detects_metadata_corruption(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_metadata(MetadataRecord(term=4, voted_for=1))
    data = bytearray(wal_path.read_bytes())
    data[8] ^= 0x01
    wal_path.write_bytes(bytes(data))
    with pytest.raises(WalCorruptionError):
        replay_wal(wal_path)


def test_replay_stops_at_truncated_tail(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(_entry(1))
        wal.append_entry(_entry(2))
    data = wal_path.read_bytes()
    wal_path.write_bytes(data[:-3])
    assert [e.index for e in replay_wal(wal_path).entries] == [1]


def test_replay_stops_at_unknown_record_type(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(_entry(1))
    with open(wal_path, "ab") as f:
        f.write(b"\x7f" + serialise_entry(_entry(2)))
    assert [e.index for e in replay_wal(wal_path).entries] == [1]


def test_truncate_suffix(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_metadata(MetadataRecord(term=3, voted_for=2))
        for i in range(1, 6):
            wal.append_entry(_entry(i, key=f"k{i}"))
        wal.truncate_suffix(3)
        assert wal.is_open
        wal.append_entry(_entry(4, key="new"))
    result = replay_wal(wal_path)
    assert result.metadata == MetadataRecord(term=3, voted_for=2)
    assert [(e.index, e.key) for e in result.entries] == [
        (1, "k1"),
        (2, "k2"),
        (3, "k3"),
        (4, "new"),
    ]


def test_rewrite_without_metadata(wal_path):
    with WriteAheadLog(wal_path) as wal:
        wal.append_metadata(MetadataRecord(term=2, voted_for=1))
        wal.append_entry(_entry(1))
        wal.rewrite(None, [])
        assert wal.is_open
    assert replay_wal(wal_path) == WalReplayResult()
    assert not wal_path.with_name("wal.bin.tmp").exists()


def test_rewrite_with_entries(wal_path):
    kept = [_entry(3, "c", "3")]
    with WriteAheadLog(wal_path) as wal:
        wal.append_entry(_entry(1))
        wal.rewrite(MetadataRecord(term=1, voted_for=-1), kept)
    result = replay_wal(wal_path)
    assert result.metadata == MetadataRecord(term=1, voted_for=-1)
    assert result.entries == kept