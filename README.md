# pagekv

`pagekv` is a small embedded database kept in a single file. The file is made of 4096-byte pages. The pages form a copy-on-write B+tree, and freed pages are recycled through a free list that is also stored in the file. Every commit writes the new pages, fsyncs, rewrites the meta page (page 0) and fsyncs again.

The package has these layers:

- `pagekv.btree`
  - `BTree`, `BNode`
  - `UpdateRequest`, `DeleteRequest`, `UpdateMode`
  - Keys are 1 to 1000 bytes long. Values are at most 3000 bytes long.
- `pagekv.iterator`
  - `BIter`, `seek_le`, `seek`, `Compare`
  - These are cursors over a tree.
- `pagekv.freelist`
  - `FreeList`
  - Each freed page is tagged with the version that freed it. A page is not reused while a transaction that might still read it is open.
- `pagekv.kv`
  - `KV`, which is the file-backed store, and `KVError`.
- `pagekv.tx`
  - `KVTX`, `CombinedIter`, `ConflictError`
  - A transaction reads from the snapshot taken when it began and keeps its writes in memory until commit. If the commit finds that a transaction which committed in the meantime wrote keys this one read, it raises `ConflictError`.
- `pagekv.table`
  - Classes: `DB`, `DBTX`, `TableDef`, `Record`, `Value`, `ValueType`, `Scanner`, `DBUpdateRequest`.
  - Functions: `escape_string`, `unescape_string`, `encode_values`, `decode_values`, `encode_key`.
  - Tables have typed columns (`ValueType.BYTES` and `ValueType.INT64`), a primary key and secondary indexes.
  - Key encoding preserves order, so range scans follow value order.

## Installation

```
pip install pagekv
```

To run the tests:

```
pip install "pagekv[test]"
pytest
```

## Key-value usage

A `KVTX` begins when it is constructed. Finish it with `commit()` or `abort()`. Used as a context manager, it aborts on exit if it was not finished.

```python
from pagekv.kv import KV
from pagekv.tx import KVTX
from pagekv.btree import DeleteRequest
from pagekv.iterator import Compare

with KV("data.db") as kv:
    tx = KVTX(kv)
    tx.set(b"greeting", b"hello")
    tx.commit()

    with KVTX(kv) as tx:
        print(tx.get(b"greeting"))           # b"hello"; None if absent
        for key, val in tx.seek(b"a", Compare.GE, b"z", Compare.LE):
            print(key, val)

    tx = KVTX(kv)
    req = DeleteRequest(key=b"greeting")
    tx.delete(req)                           # req.old holds b"hello"
    tx.commit()
```

`KVTX.update` takes an `UpdateRequest` whose `mode` is one of:

- `UpdateMode.UPSERT`
- `UpdateMode.UPDATE_ONLY`
- `UpdateMode.INSERT_ONLY`

After the call, the request reports whether the key was `added`, whether anything was `updated`, and the `old` value.

`KV` takes an optional `fsync` callable in place of `os.fsync`.

## Table usage

`DB.begin()` returns a `DBTX`. Used as a context manager, a `DBTX` commits on a clean exit and aborts when an exception escapes.

```python
from pagekv.table import DB, TableDef, Record, Scanner, ValueType
from pagekv.iterator import Compare

with DB("tables.db") as db:
    with db.begin() as tx:
        tx.table_new(TableDef(
            name="people",
            types=[ValueType.INT64, ValueType.BYTES],
            cols=["id", "name"],
            indexes=[["id"], ["name"]],
        ))
        tx.insert("people", Record().add_int64("id", 1).add_str("name", b"ada"))

    with db.begin() as tx:
        row = tx.get("people", Record().add_int64("id", 1))   # full Record or None
        key = Record().add_str("name", b"ada")
        for rec in tx.scan("people", Scanner(Compare.GE, Compare.LE, key, key)):
            print(rec.get("id").i64, rec.get("name").data)
```

### Writing rows

`DBTX` has these methods for writing:

- `insert`
- `update`
- `upsert`
- `set`, which takes a `DBUpdateRequest`
- `delete`

Each returns whether the table changed.

### Scanning

A scan's key may be any leading part of the primary key or of a secondary index. Every index is extended with the primary key columns. The scan walks in the direction given by `cmp1`: `GE` and `GT` scan ascending, `LT` and `LE` scan descending.

## Errors

- `KV.open` raises `KVError` for a file that cannot be opened or whose meta page is bad.
- When a commit fails while writing or syncing, the error is raised and the in-memory state is reverted to the last commit. Reads keep working, and the next commit first restores the meta page on disk.
- Conflicting concurrent transactions raise `ConflictError` at commit.
- Schema, record, range and missing-table problems raise `ValueError`.

## What it does not do

- There is no command-line tool, no query language and no network server. The package is a library used from Python.
- Concurrency control covers threads within one process that share one `KV`. It does not cover several processes opening the same file.
- The file handling relies on POSIX calls (`os.pread`, `os.pwrite`, directory fsync).