"""Snapshot-isolated transactions over a KV store.

A transaction reads from a snapshot of the tree taken when it began and
captures its writes in a private in-memory B+tree. Commit replays those
writes onto the store after checking that nothing it read was changed by a
transaction that committed in the meantime.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from pagekv.btree import BTree, DeleteRequest, UpdateMode, UpdateRequest
from pagekv.freelist import version_before
from pagekv.iterator import BIter, Compare, cmp_ok, seek
from pagekv.kv import KV

Buffer = Union[bytes, bytearray, memoryview]

# prefix byte of values held in the pending tree
FLAG_DELETED = 1
FLAG_UPDATED = 2

_U64 = 1 << 64


class ConflictError(Exception):
    """Raised when a commit conflicts with a concurrently committed transaction."""


@dataclass(frozen=True)
class KeyRange:
    """An inclusive key interval: ``start <= key <= stop``."""

    start: bytes
    stop: bytes


@dataclass
class _CommittedTX:
    version: int
    writes: List[KeyRange]  # sorted by start


def _compare(a: bytes, b: bytes) -> int:
    return (a > b) - (a < b)


def _direction(cmp: int) -> int:
    return 1 if cmp > 0 else -1


def _ranges_overlap(s1: List[KeyRange], s2: List[KeyRange]) -> bool:
    """Whether two lists of ranges, each sorted by start, intersect."""
    i = j = 0
    while i < len(s1) and j < len(s2):
        if s1[i].stop < s2[j].start:
            i += 1
        elif s2[j].stop < s1[i].start:
            j += 1
        else:
            return True
    return False


def _read_only_alloc(node: Buffer) -> int:
    raise RuntimeError("the snapshot is read-only")


def _read_only_free(ptr: int) -> None:
    raise RuntimeError("the snapshot is read-only")


class CombinedIter:
    """Merges a transaction's pending writes with its snapshot, within a range."""

    def __init__(
        self, top: BIter, bot: BIter, direction: int, cmp: int, end: bytes
    ) -> None:
        self.top = top  # pending writes
        self.bot = bot  # snapshot
        self.direction = direction  # +1 ascending, -1 descending
        self.cmp = cmp
        self.end = end

    def deref(self) -> Tuple[bytes, bytes]:
        """The key and value at the current position."""
        top, bot = self.top.valid(), self.bot.valid()
        if not (top or bot):
            raise ValueError("iterator is not at a valid position")
        k1 = v1 = k2 = v2 = b""
        if top:
            k1, v1 = self.top.deref()
        if bot:
            k2, v2 = self.bot.deref()
        if top and bot and _compare(k1, k2) == self.direction:
            return k2, v2
        if top:
            return k1, v1[1:]
        return k2, v2

    def valid(self) -> bool:
        """Whether the current position exists and lies within the range."""
        if self.top.valid() or self.bot.valid():
            key, _ = self.deref()
            return cmp_ok(key, self.cmp, self.end)
        return False

    def next(self) -> None:
        """Advance in the iteration direction."""
        top, bot = self.top.valid(), self.bot.valid()
        if top and bot:
            k1, _ = self.top.deref()
            k2, _ = self.bot.deref()
            order = _compare(k1, k2)
            if order == -self.direction:
                bot = False
            elif order == self.direction:
                top = False
        if not (top or bot):
            raise ValueError("iterator is not at a valid position")
        for moving, it in ((top, self.top), (bot, self.bot)):
            if moving:
                if self.direction > 0:
                    it.next()
                else:
                    it.prev()

    def __iter__(self) -> Iterator[Tuple[bytes, bytes]]:
        while self.valid():
            yield self.deref()
            self.next()


class KVTX:
    """A transaction on a KV store; begins when constructed."""

    def __init__(self, kv: KV) -> None:
        self.kv = kv
        self.reads: List[KeyRange] = []
        self.update_attempted = False
        self.done = False

        pages: List[Buffer] = []

        def new_page(node: Buffer) -> int:
            pages.append(node)
            return len(pages)

        self.pending = BTree(lambda ptr: pages[ptr - 1], new_page, lambda ptr: None)
        with kv.lock:
            self.snapshot = BTree(
                kv.read_page, _read_only_alloc, _read_only_free, root=kv.tree.root
            )
            self.version = kv.version
            kv.ongoing.append(self.version)

    def __enter__(self) -> "KVTX":
        return self

    def __exit__(self, *exc_info: object) -> None:
        if not self.done:
            self.abort()

    # --------------------------------------------------------------- reads

    def get(self, key: bytes) -> Optional[bytes]:
        """The value of ``key`` as seen by this transaction, or None."""
        self.reads.append(KeyRange(key, key))
        val = self.pending.get(key)
        if val is None:
            return self.snapshot.get(key)
        if val[0] == FLAG_UPDATED:
            return val[1:]
        if val[0] == FLAG_DELETED:
            return None
        raise RuntimeError(f"bad pending flag: {val[0]}")

    def seek(self, key1: bytes, cmp1: int, key2: bytes, cmp2: int) -> CombinedIter:
        """Iterate from ``key1`` (by ``cmp1``) while keys satisfy ``cmp2`` ``key2``."""
        if _direction(cmp1) == _direction(cmp2):
            raise ValueError("the range bounds must face each other")
        lo, hi = (key1, key2) if _direction(cmp1) > 0 else (key2, key1)
        self.reads.append(KeyRange(lo, hi))
        return CombinedIter(
            top=seek(self.pending, key1, cmp1),
            bot=seek(self.snapshot, key1, cmp1),
            direction=_direction(cmp1),
            cmp=cmp2,
            end=key2,
        )

    # -------------------------------------------------------------- writes

    def update(self, req: UpdateRequest) -> bool:
        """Capture an insert or update according to ``req.mode``."""
        self.update_attempted = True
        old = self.get(req.key)
        exists = old is not None
        if req.mode == UpdateMode.UPDATE_ONLY and not exists:
            return False
        if req.mode == UpdateMode.INSERT_ONLY and exists:
            return False
        if exists and old == req.val:
            return False
        flagged = bytes([FLAG_UPDATED]) + bytes(req.val)
        self.pending.update(UpdateRequest(key=req.key, val=flagged))
        req.added = not exists
        req.updated = True
        req.old = old
        return True

    def set(self, key: bytes, val: bytes) -> bool:
        """Insert or replace a key."""
        return self.update(UpdateRequest(key=key, val=val))

    def delete(self, req: DeleteRequest) -> bool:
        """Capture a deletion; the removed value is stored in ``req.old``."""
        self.update_attempted = True
        req.old = self.get(req.key)
        if req.old is None:
            return False
        self.pending.update(UpdateRequest(key=req.key, val=bytes([FLAG_DELETED])))
        return True

    # ---------------------------------------------------------- completion

    def _finish(self) -> None:
        if self.done:
            raise RuntimeError("transaction already finished")
        self.done = True

    def commit(self) -> None:
        """Apply the captured writes; raises ConflictError on a conflict."""
        self._finish()
        with self.kv.lock:
            try:
                self._commit_locked()
            finally:
                self._finalize()

    def abort(self) -> None:
        """Discard the captured writes."""
        self._finish()
        with self.kv.lock:
            self._finalize()

    def _pending_items(self) -> Iterator[Tuple[bytes, bytes]]:
        it = seek(self.pending, b"", Compare.GT)
        while it.valid():
            yield it.deref()
            it.next()

    def _commit_locked(self) -> None:
        kv = self.kv
        if self.update_attempted and self._detect_conflicts():
            raise ConflictError("cannot commit due to conflict")

        meta, root = kv.save_meta(), kv.tree.root
        kv.free.cur_ver = (kv.version + 1) % _U64
        writes: List[KeyRange] = []
        try:
            for key, val in self._pending_items():
                old = self.snapshot.get(key)
                if val[0] == FLAG_DELETED:
                    updated = old is not None
                    deleted = kv.tree.delete(DeleteRequest(key=key))
                    if deleted != updated:
                        raise RuntimeError("store diverged from the snapshot")
                elif val[0] == FLAG_UPDATED:
                    updated = old is None or old != val[1:]
                    req = UpdateRequest(key=key, val=val[1:])
                    kv.tree.update(req)
                    if req.updated != updated:
                        raise RuntimeError("store diverged from the snapshot")
                else:
                    raise RuntimeError(f"bad pending flag: {val[0]}")
                if updated and len(kv.ongoing) > 1:
                    writes.append(KeyRange(key, key))
        except Exception:
            kv.load_meta(meta)
            kv.nappend = 0
            kv.updates = {}
            raise

        if root != kv.tree.root:
            kv.version = (kv.version + 1) % _U64
            kv.update_or_revert(meta)

        if writes:
            writes.sort(key=lambda r: r.start)
            kv.history.append(_CommittedTX(kv.version, writes))

    def _detect_conflicts(self) -> bool:
        self.reads.sort(key=lambda r: r.start)
        for committed in reversed(self.kv.history):
            if not version_before(self.version, committed.version):
                break
            if _ranges_overlap(self.reads, committed.writes):
                return True
        return False

    def _finalize(self) -> None:
        kv = self.kv
        kv.ongoing.remove(self.version)
        min_version = kv.version
        for other in kv.ongoing:
            if version_before(other, min_version):
                min_version = other
        kv.free.set_max_ver(min_version)
        keep = next(
            (
                i
                for i, committed in enumerate(kv.history)
                if version_before(min_version, committed.version)
            ),
            len(kv.history),
        )
        del kv.history[:keep]