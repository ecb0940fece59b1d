"""Relational tables stored as rows and secondary indexes in the key-value store.

Each table and each of its indexes owns a 4-byte key prefix. A row is stored
under ``prefix | encoded primary key`` with the remaining columns as the value;
a secondary index entry is stored as ``prefix | encoded index columns`` with an
empty value. Values are encoded so that byte order matches value order.
"""

from __future__ import annotations

import json
import os
import struct
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

from pagekv.btree import DeleteRequest, UpdateMode, UpdateRequest
from pagekv.iterator import Compare
from pagekv.kv import KV
from pagekv.tx import KVTX, CombinedIter

TABLE_PREFIX_MIN = 100

_INT64_BIAS = 1 << 63
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_U32 = 1 << 32


class ValueType(IntEnum):
    """Column types; the value doubles as the type tag in encoded keys."""

    ERROR = 0
    BYTES = 1
    INT64 = 2
    INF = 0xFF  # reserved: encodes +infinity in range keys


@dataclass
class Value:
    """A table cell."""

    type: ValueType = ValueType.ERROR
    i64: int = 0
    data: bytes = b""


@dataclass
class Record:
    """A table row, or part of one: parallel lists of column names and values."""

    cols: List[str] = field(default_factory=list)
    vals: List[Value] = field(default_factory=list)

    def add_str(self, col: str, val: bytes) -> "Record":
        self.cols.append(col)
        self.vals.append(Value(ValueType.BYTES, data=bytes(val)))
        return self

    def add_int64(self, col: str, val: int) -> "Record":
        self.cols.append(col)
        self.vals.append(Value(ValueType.INT64, i64=int(val)))
        return self

    def get(self, key: str) -> Optional[Value]:
        """The value of column ``key``, or None if the record lacks it."""
        for col, val in zip(self.cols, self.vals):
            if col == key:
                return val
        return None


@dataclass
class TableDef:
    """A table schema. The first index is the primary key."""

    name: str
    types: List[int]
    cols: List[str]
    indexes: List[List[str]]
    prefixes: List[int] = field(default_factory=list)  # assigned on creation

    def to_json(self) -> str:
        payload = {
            "Name": self.name,
            "Types": [int(t) for t in self.types],
            "Cols": list(self.cols),
            "Indexes": [list(index) for index in self.indexes],
            "Prefixes": [int(p) for p in self.prefixes],
        }
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "TableDef":
        payload = json.loads(data)
        return cls(
            name=payload["Name"],
            types=list(payload.get("Types") or []),
            cols=list(payload.get("Cols") or []),
            indexes=[list(index) for index in payload.get("Indexes") or []],
            prefixes=list(payload.get("Prefixes") or []),
        )


# internal table: metadata
TDEF_META = TableDef(
    name="@meta",
    types=[ValueType.BYTES, ValueType.BYTES],
    cols=["key", "val"],
    indexes=[["key"]],
    prefixes=[1],
)

# internal table: table schemas
TDEF_TABLE = TableDef(
    name="@table",
    types=[ValueType.BYTES, ValueType.BYTES],
    cols=["name", "def"],
    indexes=[["name"]],
    prefixes=[2],
)

INTERNAL_TABLES: Dict[str, TableDef] = {"@meta": TDEF_META, "@table": TDEF_TABLE}


# ------------------------------------------------------------------ encoding


def escape_string(data: bytes) -> bytes:
    """Escape 0x00 and 0x01 so the result contains no null byte."""
    data = bytes(data)
    if b"\x00" not in data and b"\x01" not in data:
        return data
    return data.replace(b"\x01", b"\x01\x02").replace(b"\x00", b"\x01\x01")


def unescape_string(data: bytes) -> bytes:
    """Reverse :func:`escape_string`."""
    data = bytes(data)
    if b"\x01" not in data:
        return data
    out = bytearray()
    it = iter(data)
    for ch in it:
        if ch == 0x01:
            nxt = next(it, None)
            if nxt not in (1, 2):
                raise ValueError("bad escape sequence")
            out.append(nxt - 1)
        else:
            out.append(ch)
    return bytes(out)


def encode_values(vals: Iterable[Value]) -> bytes:
    """Order-preserving encoding of a sequence of values."""
    out = bytearray()
    for v in vals:
        out.append(int(v.type))
        if v.type == ValueType.INT64:
            if not _INT64_MIN <= v.i64 <= _INT64_MAX:
                raise ValueError(f"integer out of int64 range: {v.i64}")
            out += struct.pack(">Q", v.i64 + _INT64_BIAS)
        elif v.type == ValueType.BYTES:
            out += escape_string(v.data)
            out.append(0)
        else:
            raise ValueError(f"bad value type: {v.type}")
    return bytes(out)


def decode_values(data: bytes, types: Sequence[int]) -> List[Value]:
    """Decode values of the given types; the data must be consumed exactly."""
    data = bytes(data)
    out: List[Value] = []
    pos = 0
    for raw in types:
        tp = ValueType(raw)
        if pos >= len(data) or data[pos] != tp:
            raise ValueError("encoded value type mismatch")
        pos += 1
        if tp is ValueType.INT64:
            if pos + 8 > len(data):
                raise ValueError("truncated integer")
            (u,) = struct.unpack_from(">Q", data, pos)
            out.append(Value(tp, i64=u - _INT64_BIAS))
            pos += 8
        elif tp is ValueType.BYTES:
            end = data.find(b"\x00", pos)
            if end < 0:
                raise ValueError("unterminated string")
            out.append(Value(tp, data=unescape_string(data[pos:end])))
            pos = end + 1
        else:
            raise ValueError(f"bad value type: {tp}")
    if pos != len(data):
        raise ValueError("trailing bytes after encoded values")
    return out


def encode_key(prefix: int, vals: Iterable[Value]) -> bytes:
    """Key for a primary key or index entry: 4-byte prefix, then the values."""
    return struct.pack(">I", prefix) + encode_values(vals)


def _encode_key_partial(prefix: int, vals: Iterable[Value], cmp: int) -> bytes:
    key = encode_key(prefix, vals)
    if cmp in (Compare.GT, Compare.LE):
        key += b"\xff"  # missing columns as +infinity
    return key  # -infinity is the empty suffix


def _decode_key(data: bytes, types: Sequence[int]) -> List[Value]:
    return decode_values(data[4:], types)


# ------------------------------------------------------------ schema helpers


def _col_type(tdef: TableDef, col: str) -> int:
    try:
        return tdef.types[tdef.cols.index(col)]
    except ValueError:
        raise ValueError(f"unknown column: {col}") from None


def _non_pk_cols(tdef: TableDef) -> List[str]:
    return [c for c in tdef.cols if c not in tdef.indexes[0]]


def _row_cols(tdef: TableDef) -> List[str]:
    return list(tdef.indexes[0]) + _non_pk_cols(tdef)


def _get_values(tdef: TableDef, rec: Record, cols: Sequence[str]) -> List[Value]:
    vals = []
    for c in cols:
        v = rec.get(c)
        if v is None:
            raise ValueError(f"missing column: {c}")
        if v.type != _col_type(tdef, c):
            raise ValueError(f"bad column type: {c}")
        vals.append(v)
    return vals


def _check_types(tdef: TableDef, rec: Record) -> None:
    if len(rec.cols) != len(rec.vals):
        raise ValueError("bad record")
    for col, val in zip(rec.cols, rec.vals):
        if col not in tdef.cols or _col_type(tdef, col) != val.type:
            raise ValueError(f"bad column: {col}")


def _check_index_cols(tdef: TableDef, index: Sequence[str]) -> List[str]:
    if not index:
        raise ValueError("empty index")
    seen = set()
    for c in index:
        if c not in tdef.cols:
            raise ValueError(f"unknown index column: {c}")
        if c in seen:
            raise ValueError(f"duplicated column in index: {c}")
        seen.add(c)
    # every index ends with the primary key so its entries are unique
    return list(index) + [c for c in tdef.indexes[0] if c not in seen]


def _check_table_def(tdef: TableDef) -> None:
    bad = not tdef.name or not tdef.cols or not tdef.indexes
    bad = bad or len(tdef.cols) != len(tdef.types)
    bad = bad or any(t not in (ValueType.BYTES, ValueType.INT64) for t in tdef.types)
    if bad:
        raise ValueError(f"bad table schema: {tdef.name}")
    tdef.indexes = [_check_index_cols(tdef, index) for index in tdef.indexes]


# ------------------------------------------------------------------ scanning


@dataclass
class Scanner:
    """A range query from ``key1`` (by ``cmp1``) to ``key2`` (by ``cmp2``)."""

    cmp1: int = Compare.GE
    cmp2: int = Compare.LE
    key1: Record = field(default_factory=Record)
    key2: Record = field(default_factory=Record)
    _tx: Optional["DBTX"] = field(default=None, init=False, repr=False, compare=False)
    _tdef: Optional[TableDef] = field(default=None, init=False, repr=False, compare=False)
    _index: int = field(default=0, init=False, repr=False, compare=False)
    _iter: Optional[CombinedIter] = field(default=None, init=False, repr=False, compare=False)

    def _started(self) -> CombinedIter:
        if self._iter is None:
            raise RuntimeError("scanner has not been started")
        return self._iter

    def valid(self) -> bool:
        """Whether the scanner is on a row within the range."""
        return self._started().valid()

    def next(self) -> None:
        """Move to the next row in the scan direction."""
        self._started().next()

    def deref(self) -> Record:
        """The full row at the current position."""
        it = self._started()
        if not it.valid():
            raise ValueError("scanner is not at a valid position")
        tdef = self._tdef
        assert tdef is not None and self._tx is not None
        pk = list(tdef.indexes[0])
        non_pk = _non_pk_cols(tdef)
        key, val = it.deref()
        if self._index == 0:
            vals = _decode_key(key, [_col_type(tdef, c) for c in pk])
            vals += decode_values(val, [_col_type(tdef, c) for c in non_pk])
            return Record(pk + non_pk, vals)
        if val:
            raise RuntimeError("index entry carries a value")
        index = tdef.indexes[self._index]
        irec = Record(list(index), _decode_key(key, [_col_type(tdef, c) for c in index]))
        pk_rec = Record(pk, [irec.get(c) for c in pk])  # type: ignore[misc]
        row = _db_get(self._tx, tdef, pk_rec)
        if row is None:
            raise RuntimeError("index entry without a row")
        return row

    def __iter__(self) -> Iterator[Record]:
        while self.valid():
            yield self.deref()
            self.next()


def _db_scan(tx: "DBTX", tdef: TableDef, req: Scanner) -> None:
    if not ((req.cmp1 > 0 and req.cmp2 < 0) or (req.cmp2 > 0 and req.cmp1 < 0)):
        raise ValueError("bad range")
    if list(req.key1.cols) != list(req.key2.cols):
        raise ValueError("bad range key")
    _check_types(tdef, req.key1)
    _check_types(tdef, req.key2)
    cols = list(req.key1.cols)
    for idx, index in enumerate(tdef.indexes):
        if list(index[: len(cols)]) == cols:
            break
    else:
        raise ValueError("no index")
    prefix = tdef.prefixes[idx]
    start = _encode_key_partial(prefix, req.key1.vals, req.cmp1)
    end = _encode_key_partial(prefix, req.key2.vals, req.cmp2)
    req._tx = tx
    req._tdef = tdef
    req._index = idx
    req._iter = tx.kv.seek(start, Compare(req.cmp1), end, Compare(req.cmp2))


def _db_get(tx: "DBTX", tdef: TableDef, rec: Record) -> Optional[Record]:
    values = _get_values(tdef, rec, tdef.indexes[0])
    key = Record(list(tdef.indexes[0]), values)
    sc = Scanner(Compare.GE, Compare.LE, key, key)
    _db_scan(tx, tdef, sc)
    return sc.deref() if sc.valid() else None


# ------------------------------------------------------------------ updates


@dataclass
class DBUpdateRequest:
    """A row to write and how; ``updated`` and ``added`` report the outcome."""

    record: Record
    mode: UpdateMode = UpdateMode.UPSERT
    updated: bool = False
    added: bool = False


def _index_add(tx: "DBTX", tdef: TableDef, rec: Record) -> None:
    for index, prefix in zip(tdef.indexes[1:], tdef.prefixes[1:]):
        req = UpdateRequest(key=encode_key(prefix, _get_values(tdef, rec, index)), val=b"")
        tx.kv.update(req)
        if not req.added:
            raise RuntimeError("index entry already exists")


def _index_del(tx: "DBTX", tdef: TableDef, rec: Record) -> None:
    for index, prefix in zip(tdef.indexes[1:], tdef.prefixes[1:]):
        key = encode_key(prefix, _get_values(tdef, rec, index))
        if not tx.kv.delete(DeleteRequest(key=key)):
            raise RuntimeError("index entry is missing")


def _db_update(tx: "DBTX", tdef: TableDef, dbreq: DBUpdateRequest) -> bool:
    cols = _row_cols(tdef)
    values = _get_values(tdef, dbreq.record, cols)  # expects a full row
    npk = len(tdef.indexes[0])
    req = UpdateRequest(
        key=encode_key(tdef.prefixes[0], values[:npk]),
        val=encode_values(values[npk:]),
        mode=dbreq.mode,
    )
    tx.kv.update(req)
    dbreq.added, dbreq.updated = req.added, req.updated
    if req.updated and not req.added:
        assert req.old is not None
        old = decode_values(req.old, [_col_type(tdef, c) for c in cols[npk:]])
        _index_del(tx, tdef, Record(cols, values[:npk] + old))
    if req.updated:
        _index_add(tx, tdef, dbreq.record)
    return req.updated


def _db_delete(tx: "DBTX", tdef: TableDef, rec: Record) -> bool:
    values = _get_values(tdef, rec, tdef.indexes[0])
    req = DeleteRequest(key=encode_key(tdef.prefixes[0], values))
    deleted = tx.kv.delete(req)
    if deleted:
        assert req.old is not None
        non_pk = _non_pk_cols(tdef)
        old = decode_values(req.old, [_col_type(tdef, c) for c in non_pk])
        _index_del(tx, tdef, Record(list(tdef.indexes[0]) + non_pk, values + old))
    return deleted


# ------------------------------------------------------------ transactions


class DBTX:
    """A table-level transaction; begins when constructed."""

    def __init__(self, db: "DB") -> None:
        self.db = db
        self.kv = KVTX(db.kv)

    def __enter__(self) -> "DBTX":
        return self

    def __exit__(self, exc_type: object, *rest: object) -> None:
        if self.kv.done:
            return
        if exc_type is None:
            self.commit()
        else:
            self.abort()

    def _table_def(self, name: str) -> TableDef:
        tdef = INTERNAL_TABLES.get(name)
        if tdef is None:
            tdef = self.db._table_def(self, name)
        if tdef is None:
            raise ValueError(f"table not found: {name}")
        return tdef

    def _load_table_def(self, name: str) -> Optional[TableDef]:
        row = _db_get(self, TDEF_TABLE, Record().add_str("name", name.encode()))
        if row is None:
            return None
        definition = row.get("def")
        assert definition is not None
        return TableDef.from_json(definition.data)

    def get(self, table: str, rec: Record) -> Optional[Record]:
        """The full row with the primary key given in ``rec``, or None."""
        return _db_get(self, self._table_def(table), rec)

    def table_new(self, tdef: TableDef) -> None:
        """Create a table; its indexes are completed and prefixes assigned."""
        _check_table_def(tdef)
        table = Record().add_str("name", tdef.name.encode())
        if _db_get(self, TDEF_TABLE, table) is not None:
            raise ValueError(f"table exists: {tdef.name}")
        prefix = TABLE_PREFIX_MIN
        meta = _db_get(self, TDEF_META, Record().add_str("key", b"next_prefix"))
        if meta is not None:
            stored = meta.get("val")
            assert stored is not None
            (prefix,) = struct.unpack("<I", stored.data)
            if prefix <= TABLE_PREFIX_MIN:
                raise RuntimeError("corrupt table prefix counter")
        if tdef.prefixes:
            raise ValueError("table prefixes are assigned automatically")
        tdef.prefixes = [prefix + i for i in range(len(tdef.indexes))]
        nxt = (prefix + len(tdef.indexes)) % _U32
        counter = Record().add_str("key", b"next_prefix").add_str("val", struct.pack("<I", nxt))
        _db_update(self, TDEF_META, DBUpdateRequest(counter))
        table.add_str("def", tdef.to_json().encode())
        _db_update(self, TDEF_TABLE, DBUpdateRequest(table))

    def set(self, table: str, dbreq: DBUpdateRequest) -> bool:
        """Write a full row according to ``dbreq.mode``."""
        return _db_update(self, self._table_def(table), dbreq)

    def insert(self, table: str, rec: Record) -> bool:
        return self.set(table, DBUpdateRequest(rec, UpdateMode.INSERT_ONLY))

    def update(self, table: str, rec: Record) -> bool:
        return self.set(table, DBUpdateRequest(rec, UpdateMode.UPDATE_ONLY))

    def upsert(self, table: str, rec: Record) -> bool:
        return self.set(table, DBUpdateRequest(rec, UpdateMode.UPSERT))

    def delete(self, table: str, rec: Record) -> bool:
        """Delete the row with the primary key given in ``rec``."""
        return _db_delete(self, self._table_def(table), rec)

    def scan(self, table: str, req: Scanner) -> Scanner:
        """Start a range query; returns ``req`` positioned at its first row."""
        _db_scan(self, self._table_def(table), req)
        return req

    def commit(self) -> None:
        self.kv.commit()

    def abort(self) -> None:
        self.kv.abort()


class DB:
    """A database of tables kept in one file."""

    def __init__(
        self,
        path: Union[str, "os.PathLike[str]"],
        fsync: Optional[object] = None,
    ) -> None:
        self.path = os.fspath(path)
        self.kv = KV(self.path, fsync=fsync)  # type: ignore[arg-type]
        self.tables: Dict[str, TableDef] = {}  # cached schemas
        self._lock = threading.Lock()

    def open(self) -> None:
        self.tables = {}
        self.kv.open()

    def close(self) -> None:
        self.kv.close()

    def __enter__(self) -> "DB":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def begin(self) -> DBTX:
        return DBTX(self)

    def commit(self, tx: DBTX) -> None:
        tx.commit()

    def abort(self, tx: DBTX) -> None:
        tx.abort()

    def _table_def(self, tx: DBTX, name: str) -> Optional[TableDef]:
        with self._lock:
            tdef = self.tables.get(name)
            if tdef is None:
                tdef = tx._load_table_def(name)
                if tdef is not None:
                    self.tables[name] = tdef
            return tdef