"""Copy-on-write B+tree stored in fixed-size pages.

Node layout (little endian)::

    | type | nkeys |  pointers  |   offsets  | key-values
    |  2B  |   2B  | nkeys * 8B | nkeys * 2B | ...

Key-value layout::

    | klen | vlen | key | val |
    |  2B  |  2B  | ... | ... |
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, List, Optional, Tuple, Union

Buffer = Union[bytes, bytearray, memoryview]

HEADER = 4
BTREE_PAGE_SIZE = 4096
BTREE_MAX_KEY_SIZE = 1000
BTREE_MAX_VAL_SIZE = 3000

if HEADER + 8 + 2 + 4 + BTREE_MAX_KEY_SIZE + BTREE_MAX_VAL_SIZE > BTREE_PAGE_SIZE:
    raise RuntimeError("a single maximal key-value pair must fit in one page")


class NodeType(IntEnum):
    """Kind of a B+tree node."""

    NODE = 1
    LEAF = 2


class UpdateMode(IntEnum):
    """How an update treats existing and missing keys."""

    UPSERT = 0  # insert or replace
    UPDATE_ONLY = 1  # update existing keys only
    INSERT_ONLY = 2  # add new keys only


def _write(buf: bytearray, pos: int, chunk: Buffer) -> None:
    end = pos + len(chunk)
    if end > len(buf):
        raise ValueError("node overflow")
    buf[pos:end] = chunk


class BNode:
    """A view over the bytes of one B+tree node."""

    __slots__ = ("data",)

    def __init__(self, data: Buffer) -> None:
        self.data = data

    @classmethod
    def blank(cls, size: int = BTREE_PAGE_SIZE) -> "BNode":
        return cls(bytearray(size))

    def btype(self) -> int:
        return struct.unpack_from("<H", self.data, 0)[0]

    def nkeys(self) -> int:
        return struct.unpack_from("<H", self.data, 2)[0]

    def set_header(self, btype: int, nkeys: int) -> None:
        struct.pack_into("<HH", self.data, 0, int(btype), nkeys)

    def _check_idx(self, idx: int) -> None:
        if not 0 <= idx < self.nkeys():
            raise IndexError(f"node index out of range: {idx}")

    def get_ptr(self, idx: int) -> int:
        self._check_idx(idx)
        return struct.unpack_from("<Q", self.data, HEADER + 8 * idx)[0]

    def set_ptr(self, idx: int, val: int) -> None:
        self._check_idx(idx)
        struct.pack_into("<Q", self.data, HEADER + 8 * idx, val)

    def _offset_pos(self, idx: int) -> int:
        n = self.nkeys()
        if not 1 <= idx <= n:
            raise IndexError(f"offset index out of range: {idx}")
        return HEADER + 8 * n + 2 * (idx - 1)

    def get_offset(self, idx: int) -> int:
        if idx == 0:
            return 0
        return struct.unpack_from("<H", self.data, self._offset_pos(idx))[0]

    def set_offset(self, idx: int, offset: int) -> None:
        struct.pack_into("<H", self.data, self._offset_pos(idx), offset)

    def kv_pos(self, idx: int) -> int:
        n = self.nkeys()
        if not 0 <= idx <= n:
            raise IndexError(f"key-value index out of range: {idx}")
        return HEADER + 10 * n + self.get_offset(idx)

    def get_key(self, idx: int) -> bytes:
        self._check_idx(idx)
        pos = self.kv_pos(idx)
        (klen,) = struct.unpack_from("<H", self.data, pos)
        return bytes(self.data[pos + 4 : pos + 4 + klen])

    def get_val(self, idx: int) -> bytes:
        self._check_idx(idx)
        pos = self.kv_pos(idx)
        klen, vlen = struct.unpack_from("<HH", self.data, pos)
        start = pos + 4 + klen
        return bytes(self.data[start : start + vlen])

    def nbytes(self) -> int:
        """Size of the node's used bytes."""
        return self.kv_pos(self.nkeys())


def node_lookup_le(node: BNode, key: bytes) -> int:
    """Index of the last key that is less than or equal to ``key``.

    The first key is a copy from the parent (or the empty sentinel), so it
    always qualifies.
    """
    lo, hi = 1, node.nkeys()
    while lo < hi:
        mid = (lo + hi) // 2
        if node.get_key(mid) <= key:
            lo = mid + 1
        else:
            hi = mid
    return lo - 1


@dataclass
class UpdateRequest:
    """Input and results of an insert or update."""

    key: bytes
    val: bytes = b""
    mode: UpdateMode = UpdateMode.UPSERT
    added: bool = False  # a new key was added
    updated: bool = False  # a new key was added or an old value changed
    old: Optional[bytes] = None  # the value before the update


@dataclass
class DeleteRequest:
    """Input and result of a deletion."""

    key: bytes
    old: Optional[bytes] = None


# ---------------------------------------------------------------- node edits


def _append_kv(new: BNode, idx: int, ptr: int, key: Buffer, val: Buffer) -> None:
    new.set_ptr(idx, ptr)
    pos = new.kv_pos(idx)
    _write(new.data, pos, struct.pack("<HH", len(key), len(val)))
    _write(new.data, pos + 4, key)
    _write(new.data, pos + 4 + len(key), val)
    new.set_offset(idx + 1, new.get_offset(idx) + 4 + len(key) + len(val))


def _append_range(new: BNode, old: BNode, dst: int, src: int, n: int) -> None:
    if src + n > old.nkeys() or dst + n > new.nkeys():
        raise IndexError("range out of bounds")
    if n == 0:
        return
    _write(
        new.data,
        HEADER + 8 * dst,
        old.data[HEADER + 8 * src : HEADER + 8 * (src + n)],
    )
    dst_begin = new.get_offset(dst)
    src_begin = old.get_offset(src)
    for i in range(1, n + 1):
        new.set_offset(dst + i, dst_begin + old.get_offset(src + i) - src_begin)
    begin = old.kv_pos(src)
    end = old.kv_pos(src + n)
    _write(new.data, new.kv_pos(dst), old.data[begin:end])


def _leaf_insert(new: BNode, old: BNode, idx: int, key: bytes, val: bytes) -> None:
    new.set_header(NodeType.LEAF, old.nkeys() + 1)
    _append_range(new, old, 0, 0, idx)
    _append_kv(new, idx, 0, key, val)
    _append_range(new, old, idx + 1, idx, old.nkeys() - idx)


def _leaf_update(new: BNode, old: BNode, idx: int, key: bytes, val: bytes) -> None:
    new.set_header(NodeType.LEAF, old.nkeys())
    _append_range(new, old, 0, 0, idx)
    _append_kv(new, idx, 0, key, val)
    _append_range(new, old, idx + 1, idx + 1, old.nkeys() - (idx + 1))


def _leaf_delete(new: BNode, old: BNode, idx: int) -> None:
    new.set_header(NodeType.LEAF, old.nkeys() - 1)
    _append_range(new, old, 0, 0, idx)
    _append_range(new, old, idx, idx + 1, old.nkeys() - (idx + 1))


def _replace_kid_1ptr(new: BNode, old: BNode, idx: int, ptr: int) -> None:
    size = old.nbytes()
    _write(new.data, 0, old.data[:size])
    new.set_ptr(idx, ptr)


def _replace_kid_n(
    tree: "BTree", new: BNode, old: BNode, idx: int, kids: List[BNode]
) -> None:
    inc = len(kids)
    if inc == 1 and kids[0].get_key(0) == old.get_key(idx):
        _replace_kid_1ptr(new, old, idx, tree.new_page(kids[0].data))
        return
    new.set_header(NodeType.NODE, old.nkeys() + inc - 1)
    _append_range(new, old, 0, 0, idx)
    for i, kid in enumerate(kids):
        _append_kv(new, idx + i, tree.new_page(kid.data), kid.get_key(0), b"")
    _append_range(new, old, idx + inc, idx + 1, old.nkeys() - (idx + 1))


def _replace_2kid(new: BNode, old: BNode, idx: int, ptr: int, key: bytes) -> None:
    new.set_header(NodeType.NODE, old.nkeys() - 1)
    _append_range(new, old, 0, 0, idx)
    _append_kv(new, idx, ptr, key, b"")
    _append_range(new, old, idx + 1, idx + 2, old.nkeys() - (idx + 2))


def _merge(new: BNode, left: BNode, right: BNode) -> None:
    new.set_header(left.btype(), left.nkeys() + right.nkeys())
    _append_range(new, left, 0, 0, left.nkeys())
    _append_range(new, right, left.nkeys(), 0, right.nkeys())
    if new.nbytes() > BTREE_PAGE_SIZE:
        raise ValueError("merged node exceeds a page")


def _split2(left: BNode, right: BNode, old: BNode) -> None:
    """Split ``old`` in two; the right half always fits in a page."""
    if old.nkeys() < 2:
        raise ValueError("cannot split a node with fewer than 2 keys")
    nleft = old.nkeys() // 2

    def left_bytes() -> int:
        return HEADER + 10 * nleft + old.get_offset(nleft)

    while left_bytes() > BTREE_PAGE_SIZE:
        nleft -= 1
    if nleft < 1:
        raise ValueError("cannot split node")

    def right_bytes() -> int:
        return old.nbytes() - left_bytes() + HEADER

    while right_bytes() > BTREE_PAGE_SIZE:
        nleft += 1
    if nleft >= old.nkeys():
        raise ValueError("cannot split node")
    nright = old.nkeys() - nleft

    left.set_header(old.btype(), nleft)
    right.set_header(old.btype(), nright)
    _append_range(left, old, 0, 0, nleft)
    _append_range(right, old, 0, nleft, nright)


def _split3(old: BNode) -> List[BNode]:
    """Split a node into 1 to 3 page-sized nodes."""
    if old.nbytes() <= BTREE_PAGE_SIZE:
        return [BNode(bytearray(old.data[:BTREE_PAGE_SIZE]))]
    left = BNode.blank(2 * BTREE_PAGE_SIZE)
    right = BNode.blank()
    _split2(left, right, old)
    if left.nbytes() <= BTREE_PAGE_SIZE:
        return [BNode(left.data[:BTREE_PAGE_SIZE]), right]
    leftleft = BNode.blank()
    middle = BNode.blank()
    _split2(leftleft, middle, left)
    return [leftleft, middle, right]


# --------------------------------------------------------------- the tree


PageGetter = Callable[[int], Buffer]
PageAllocator = Callable[[Buffer], int]
PageFreer = Callable[[int], None]


class BTree:
    """A B+tree whose pages are managed through callbacks."""

    def __init__(
        self,
        get_page: PageGetter,
        new_page: PageAllocator,
        del_page: PageFreer,
        root: int = 0,
    ) -> None:
        self.root = root
        self.get_page = get_page
        self.new_page = new_page
        self.del_page = del_page

    def _node(self, ptr: int) -> BNode:
        return BNode(self.get_page(ptr))

    def upsert(self, key: bytes, val: bytes) -> bool:
        return self.update(UpdateRequest(key=key, val=val))

    def update(self, req: UpdateRequest) -> bool:
        """Insert or update a key according to ``req.mode``."""
        _check_key(req.key)
        if len(req.val) > BTREE_MAX_VAL_SIZE:
            raise ValueError("value too large")

        if self.root == 0:
            root = BNode.blank()
            root.set_header(NodeType.LEAF, 2)
            # the empty sentinel key makes the tree cover the whole key space
            _append_kv(root, 0, 0, b"", b"")
            _append_kv(root, 1, 0, req.key, req.val)
            self.root = self.new_page(root.data)
            req.added = True
            req.updated = True
            return True

        updated = self._insert(req, self._node(self.root))
        if updated is None:
            return False

        split = _split3(updated)
        self.del_page(self.root)
        if len(split) > 1:
            root = BNode.blank()
            root.set_header(NodeType.NODE, len(split))
            for i, kid in enumerate(split):
                ptr, key = self.new_page(kid.data), kid.get_key(0)
                _append_kv(root, i, ptr, key, b"")
            self.root = self.new_page(root.data)
        else:
            self.root = self.new_page(split[0].data)
        return True

    def _insert(self, req: UpdateRequest, node: BNode) -> Optional[BNode]:
        new = BNode.blank(2 * BTREE_PAGE_SIZE)
        idx = node_lookup_le(node, req.key)
        btype = node.btype()
        if btype == NodeType.LEAF:
            if req.key == node.get_key(idx):
                if req.mode == UpdateMode.INSERT_ONLY:
                    return None
                old_val = node.get_val(idx)
                if req.val == old_val:
                    return None
                _leaf_update(new, node, idx, req.key, req.val)
                req.updated = True
                req.old = old_val
            else:
                if req.mode == UpdateMode.UPDATE_ONLY:
                    return None
                _leaf_insert(new, node, idx + 1, req.key, req.val)
                req.updated = True
                req.added = True
            return new
        if btype == NodeType.NODE:
            kptr = node.get_ptr(idx)
            updated = self._insert(req, self._node(kptr))
            if updated is None:
                return None
            split = _split3(updated)
            self.del_page(kptr)
            _replace_kid_n(self, new, node, idx, split)
            return new
        raise ValueError(f"bad node type: {btype}")

    def delete(self, req: DeleteRequest) -> bool:
        """Remove a key; the removed value is stored in ``req.old``."""
        _check_key(req.key)
        if self.root == 0:
            return False
        updated = self._delete(req, self._node(self.root))
        if updated is None:
            return False
        self.del_page(self.root)
        if updated.btype() == NodeType.NODE and updated.nkeys() == 1:
            self.root = updated.get_ptr(0)  # remove a level
        else:
            self.root = self.new_page(updated.data)
        return True

    def _delete(self, req: DeleteRequest, node: BNode) -> Optional[BNode]:
        idx = node_lookup_le(node, req.key)
        btype = node.btype()
        if btype == NodeType.LEAF:
            if req.key != node.get_key(idx):
                return None
            req.old = node.get_val(idx)
            new = BNode.blank()
            _leaf_delete(new, node, idx)
            return new
        if btype == NodeType.NODE:
            return self._node_delete(req, node, idx)
        raise ValueError(f"bad node type: {btype}")

    def _node_delete(self, req: DeleteRequest, node: BNode, idx: int) -> Optional[BNode]:
        kptr = node.get_ptr(idx)
        updated = self._delete(req, self._node(kptr))
        if updated is None:
            return None
        self.del_page(kptr)

        new = BNode.blank()
        direction, sibling = self._should_merge(node, idx, updated)
        if direction < 0:
            merged = BNode.blank()
            _merge(merged, sibling, updated)
            self.del_page(node.get_ptr(idx - 1))
            _replace_2kid(new, node, idx - 1, self.new_page(merged.data), merged.get_key(0))
        elif direction > 0:
            merged = BNode.blank()
            _merge(merged, updated, sibling)
            self.del_page(node.get_ptr(idx + 1))
            _replace_2kid(new, node, idx, self.new_page(merged.data), merged.get_key(0))
        elif updated.nkeys() == 0:
            # one empty child without siblings: the parent becomes empty too
            if not (node.nkeys() == 1 and idx == 0):
                raise ValueError("empty child with siblings")
            new.set_header(NodeType.NODE, 0)
        else:
            _replace_kid_n(self, new, node, idx, [updated])
        return new

    def _should_merge(
        self, node: BNode, idx: int, updated: BNode
    ) -> Tuple[int, Optional[BNode]]:
        if updated.nbytes() > BTREE_PAGE_SIZE // 4:
            return 0, None
        if idx > 0:
            sibling = self._node(node.get_ptr(idx - 1))
            if sibling.nbytes() + updated.nbytes() - HEADER <= BTREE_PAGE_SIZE:
                return -1, sibling
        if idx + 1 < node.nkeys():
            sibling = self._node(node.get_ptr(idx + 1))
            if sibling.nbytes() + updated.nbytes() - HEADER <= BTREE_PAGE_SIZE:
                return 1, sibling
        return 0, None

    def get(self, key: bytes) -> Optional[bytes]:
        """Return the value of ``key``, or None if it is absent."""
        if self.root == 0:
            return None
        node = self._node(self.root)
        while True:
            idx = node_lookup_le(node, key)
            btype = node.btype()
            if btype == NodeType.LEAF:
                return node.get_val(idx) if key == node.get_key(idx) else None
            if btype == NodeType.NODE:
                node = self._node(node.get_ptr(idx))
                continue
            raise ValueError(f"bad node type: {btype}")


def _check_key(key: bytes) -> None:
    if len(key) == 0:
        raise ValueError("empty key")
    if len(key) > BTREE_MAX_KEY_SIZE:
        raise ValueError("key too large")