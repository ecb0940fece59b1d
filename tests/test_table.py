from typing import Dict, List, Optional

import pytest

from pagekv.iterator import Compare
from pagekv.table import (
    DB,
    DBUpdateRequest,
    Record,
    Scanner,
    TableDef,
    Value,
    ValueType,
    decode_values,
    encode_key,
    encode_values,
    escape_string,
    unescape_string,
)

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1


def _noop_fsync(fd: int) -> None:
    return None


class _Harness:
    def __init__(self, path) -> None:
        self.db = DB(path, fsync=_noop_fsync)
        self.db.open()
        self.ref: Dict[str, List[Record]] = {}

    def dispose(self) -> None:
        self.db.close()

    def create(self, tdef: TableDef) -> None:
        tx = self.db.begin()
        tx.table_new(tdef)
        self.db.commit(tx)

    def find_ref(self, table: str, rec: Record) -> int:
        pkeys = len(self.db.tables[table].indexes[0])
        found = -1
        for i, old in enumerate(self.ref.get(table, [])):
            if old.vals[:pkeys] == rec.vals[:pkeys]:
                assert found == -1
                found = i
        return found

    def add(self, table: str, rec: Record) -> bool:
        tx = self.db.begin()
        dbreq = DBUpdateRequest(record=rec)
        tx.set(table, dbreq)
        self.db.commit(tx)
        records = self.ref.setdefault(table, [])
        idx = self.find_ref(table, rec)
        assert (idx < 0) == dbreq.added
        if idx < 0:
            records.append(rec)
        else:
            records[idx] = rec
        return dbreq.added

    def delete(self, table: str, rec: Record) -> bool:
        tx = self.db.begin()
        deleted = tx.delete(table, rec)
        self.db.commit(tx)
        idx = self.find_ref(table, rec)
        if deleted:
            assert idx >= 0
            del self.ref[table][idx]
        else:
            assert idx == -1
        return deleted

    def get(self, table: str, rec: Record) -> Optional[Record]:
        tx = self.db.begin()
        row = tx.get(table, rec)
        self.db.commit(tx)
        idx = self.find_ref(table, rec)
        if row is not None:
            assert idx >= 0
            assert self.ref[table][idx] == row
        else:
            assert idx < 0
        return row


@pytest.fixture
def harness(tmp_path):
    h = _Harness(tmp_path / "r.db")
    yield h
    h.dispose()


def _base_tdef(indexes=None) -> TableDef:
    return TableDef(
        name="tbl_test",
        cols=["ki1", "ks2", "s1", "i2"],
        types=[ValueType.INT64, ValueType.BYTES, ValueType.BYTES, ValueType.INT64],
        indexes=indexes if indexes is not None else [["ki1", "ks2"]],
    )


def _record(ki1: int, ks2: str, s1: str, i2: int) -> Record:
    return Record().add_int64("ki1", ki1).add_str("ks2", ks2.encode()).add_str(
        "s1", s1.encode()
    ).add_int64("i2", i2)


def test_table_create(harness):
    harness.create(_base_tdef())
    harness.create(
        TableDef(
            name="tbl_test2",
            cols=["ki1", "ks2"],
            types=[ValueType.INT64, ValueType.BYTES],
            indexes=[["ki1", "ks2"]],
        )
    )
    tx = harness.db.begin()
    meta = tx.get("@meta", Record().add_str("key", b"next_prefix"))
    assert meta is not None
    assert meta.get("val").data == bytes([102, 0, 0, 0])
    table = tx.get("@table", Record().add_str("name", b"tbl_test"))
    assert table is not None
    expected = (
        '{"Name":"tbl_test","Types":[2,1,1,2],"Cols":["ki1","ks2","s1","i2"],'
        '"Indexes":[["ki1","ks2"]],"Prefixes":[100]}'
    )
    assert table.get("def").data.decode() == expected
    harness.db.commit(tx)


def test_table_basic(harness):
    harness.create(_base_tdef())
    rec = _record(1, "hello", "world", 2)
    assert harness.add("tbl_test", rec) is True

    got = harness.get("tbl_test", Record().add_int64("ki1", 1).add_str("ks2", b"hello"))
    assert got == _record(1, "hello", "world", 2)
    assert harness.get("tbl_test", Record().add_int64("ki1", 1).add_str("ks2", b"hello2")) is None

    rec.get("s1").data = b"www"
    assert harness.add("tbl_test", rec) is False
    got = harness.get("tbl_test", Record().add_int64("ki1", 1).add_str("ks2", b"hello"))
    assert got.get("s1").data == b"www"

    key = Record().add_int64("ki1", 1).add_str("ks2", b"hello2")
    assert harness.delete("tbl_test", key) is False
    key.get("ks2").data = b"hello"
    assert harness.delete("tbl_test", key) is True
    assert harness.get("tbl_test", Record().add_int64("ki1", 1).add_str("ks2", b"hello")) is None


@pytest.mark.parametrize(
    "raw, escaped",
    [(b"", b""), (b"\x00", b"\x01\x01"), (b"\x01", b"\x01\x02"), (b"a\x00b\x01", b"a\x01\x01b\x01\x02")],
)
def test_string_escape(raw, escaped):
    assert escape_string(raw) == escaped
    assert unescape_string(escaped) == raw


def test_unescape_rejects_bad_sequence():
    with pytest.raises(ValueError):
        unescape_string(b"\x01\x05")


def test_table_encoding():
    inputs = sorted([-1, 0, 1, INT64_MIN, INT64_MAX])
    encoded = []
    for i in inputs:
        b = encode_values([Value(ValueType.INT64, i64=i)])
        assert decode_values(b, [ValueType.INT64])[0].i64 == i
        encoded.append(b)
    assert encoded == sorted(encoded)


def test_encode_values_layout():
    assert encode_values([Value(ValueType.INT64, i64=0)]) == b"\x02\x80" + b"\x00" * 7
    assert encode_values([Value(ValueType.BYTES, data=b"ab")]) == b"\x01ab\x00"
    assert encode_key(100, []) == b"\x00\x00\x00\x64"


def test_encode_rejects_out_of_range_int():
    with pytest.raises(ValueError):
        encode_values([Value(ValueType.INT64, i64=INT64_MAX + 1)])


def test_decode_values_type_mismatch():
    data = encode_values([Value(ValueType.BYTES, data=b"x")])
    with pytest.raises(ValueError):
        decode_values(data, [ValueType.INT64])


def test_mixed_values_round_trip():
    vals = [Value(ValueType.BYTES, data=b"a\x00\x01z"), Value(ValueType.INT64, i64=-42)]
    assert decode_values(encode_values(vals), [ValueType.BYTES, ValueType.INT64]) == vals


def test_table_def_json_round_trip():
    tdef = _base_tdef([["ki1", "ks2"], ["i2", "ki1", "ks2"]])
    tdef.prefixes = [100, 101]
    assert TableDef.from_json(tdef.to_json()) == tdef


def test_table_scan(harness):
    harness.create(_base_tdef([["ki1", "ks2"], ["i2"]]))
    size = 20
    for i in range(0, size, 2):
        assert harness.add("tbl_test", _record(i, "hello", "world", i // 2))

    tx = harness.db.begin()
    full = tx.scan("tbl_test", Scanner(Compare.GE, Compare.LE, Record(), Record()))
    assert list(full) == harness.ref["tbl_test"]
    harness.db.commit(tx)

    def tmpkey(n: int) -> Record:
        return Record().add_int64("ki1", n)

    def i2key(n: int) -> Record:
        return Record().add_int64("i2", int(n / 2))

    tx = harness.db.begin()
    for i in range(0, size, 2):
        ref = []
        for j in range(i, size, 2):
            ref.append(j)
            scanners = [
                (Compare.GE, Compare.LE, tmpkey(i), tmpkey(j)),
                (Compare.GE, Compare.LE, tmpkey(i - 1), tmpkey(j + 1)),
                (Compare.GT, Compare.LT, tmpkey(i - 1), tmpkey(j + 1)),
                (Compare.GT, Compare.LT, tmpkey(i - 2), tmpkey(j + 2)),
                (Compare.GE, Compare.LE, i2key(i), i2key(j)),
                (Compare.GT, Compare.LT, i2key(i - 2), i2key(j + 2)),
            ]
            scanners += [(c2, c1, k2, k1) for c1, c2, k1, k2 in scanners]
            for c1, c2, k1, k2 in scanners:
                sc = tx.scan("tbl_test", Scanner(c1, c2, k1, k2))
                keys = [row.get("ki1").i64 for row in sc]
                if c1 < c2:
                    keys.reverse()
                assert keys == ref
    harness.db.commit(tx)


def test_table_index(harness):
    harness.create(
        _base_tdef([["ki1", "ks2"], ["ks2", "ki1"], ["i2"], ["ki1", "i2"]])
    )
    r1 = _record(1, "a1", "v1", 2)
    r2 = _record(2, "a2", "v2", -2)
    harness.add("tbl_test", r1)
    harness.add("tbl_test", r2)

    def point(i2: int) -> Scanner:
        key = Record().add_int64("i2", i2)
        return Scanner(Compare.GE, Compare.LE, key, key)

    tx = harness.db.begin()
    sc = tx.scan("tbl_test", point(2))
    assert sc.valid()
    assert sc.deref() == r1
    sc.next()
    assert not sc.valid()
    harness.db.commit(tx)

    tx = harness.db.begin()
    sc = tx.scan(
        "tbl_test",
        Scanner(Compare.GT, Compare.LE, Record().add_int64("i2", 2), Record().add_int64("i2", 4)),
    )
    assert not sc.valid()
    harness.db.commit(tx)

    harness.add("tbl_test", _record(1, "a1", "v1", 1))
    tx = harness.db.begin()
    assert not tx.scan("tbl_test", point(2)).valid()
    harness.db.commit(tx)

    tx = harness.db.begin()
    assert tx.scan("tbl_test", point(1)).valid()
    harness.db.commit(tx)

    assert harness.delete("tbl_test", Record().add_int64("ki1", 1).add_str("ks2", b"a1"))

    tx = harness.db.begin()
    assert not tx.scan("tbl_test", point(1)).valid()
    harness.db.commit(tx)


def test_index_completed_with_primary_key(harness):
    tdef = _base_tdef([["ki1", "ks2"], ["i2"]])
    harness.create(tdef)
    assert tdef.indexes == [["ki1", "ks2"], ["i2", "ki1", "ks2"]]
    assert tdef.prefixes == [100, 101]


def test_insert_update_upsert_modes(harness):
    harness.create(_base_tdef())
    tx = harness.db.begin()
    assert tx.update("tbl_test", _record(5, "x", "a", 1)) is False
    assert tx.insert("tbl_test", _record(5, "x", "a", 1)) is True
    assert tx.insert("tbl_test", _record(5, "x", "b", 1)) is False
    assert tx.update("tbl_test", _record(5, "x", "c", 1)) is True
    assert tx.upsert("tbl_test", _record(5, "x", "c", 1)) is False
    row = tx.get("tbl_test", Record().add_int64("ki1", 5).add_str("ks2", b"x"))
    assert row.get("s1").data == b"c"
    tx.commit()


def test_table_not_found(harness):
    tx = harness.db.begin()
    with pytest.raises(ValueError, match="table not found"):
        tx.get("missing", Record().add_int64("ki1", 1))
    tx.abort()


def test_table_exists(harness):
    harness.create(_base_tdef())
    tx = harness.db.begin()
    with pytest.raises(ValueError, match="table exists"):
        tx.table_new(_base_tdef())
    tx.abort()


@pytest.mark.parametrize(
    "indexes, message",
    [([], "bad table schema"), ([[]], "empty index"), ([["nope"]], "unknown index column"),
     ([["ki1", "ki1"]], "duplicated column")],
)
def test_bad_schema(harness, indexes, message):
    tx = harness.db.begin()
    with pytest.raises(ValueError, match=message):
        tx.table_new(_base_tdef(indexes))
    tx.abort()


def test_missing_and_bad_columns(harness):
    harness.create(_base_tdef())
    tx = harness.db.begin()
    with pytest.raises(ValueError, match="missing column"):
        tx.upsert("tbl_test", Record().add_int64("ki1", 1).add_str("ks2", b"k"))
    bad = Record().add_int64("ki1", 1).add_str("ks2", b"k").add_str("s1", b"s").add_str("i2", b"2")
    with pytest.raises(ValueError, match="bad column type"):
        tx.upsert("tbl_test", bad)
    tx.abort()


def test_bad_scan_ranges(harness):
    harness.create(_base_tdef())
    tx = harness.db.begin()
    with pytest.raises(ValueError, match="bad range"):
        tx.scan("tbl_test", Scanner(Compare.GE, Compare.GT, Record(), Record()))
    with pytest.raises(ValueError, match="bad range key"):
        tx.scan(
            "tbl_test",
            Scanner(Compare.GE, Compare.LE, Record().add_int64("ki1", 1), Record()),
        )
    with pytest.raises(ValueError, match="no index"):
        key = Record().add_str("s1", b"x")
        tx.scan("tbl_test", Scanner(Compare.GE, Compare.LE, key, key))
    tx.abort()


def test_data_persists_after_reopen(tmp_path):
    path = tmp_path / "p.db"
    db = DB(path, fsync=_noop_fsync)
    db.open()
    tx = db.begin()
    tx.table_new(_base_tdef())
    tx.insert("tbl_test", _record(7, "k", "v", 3))
    db.commit(tx)
    db.close()

    again = DB(path, fsync=_noop_fsync)
    again.open()
    tx = again.begin()
    row = tx.get("tbl_test", Record().add_int64("ki1", 7).add_str("ks2", b"k"))
    tx.abort()
    again.close()
    assert row == _record(7, "k", "v", 3)