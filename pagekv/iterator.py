"""Positioned cursors over a B+tree, with range-relative seeking."""

from __future__ import annotations

from enum import IntEnum
from typing import List, Optional, Tuple

from pagekv.btree import BNode, BTree, node_lookup_le


class Compare(IntEnum):
    """Comparison used to position an iterator relative to a key."""

    GE = 3  # >=
    GT = 2  # >
    LT = -2  # <
    LE = -3  # <=


def cmp_ok(key: bytes, cmp: int, ref: bytes) -> bool:
    """Whether ``key <cmp> ref`` holds."""
    relation = Compare(cmp)
    if relation is Compare.GE:
        return key >= ref
    if relation is Compare.GT:
        return key > ref
    if relation is Compare.LT:
        return key < ref
    return key <= ref


class BIter:
    """A cursor holding the path from the root to a leaf position."""

    def __init__(
        self,
        tree: BTree,
        path: Optional[List[BNode]] = None,
        pos: Optional[List[int]] = None,
    ) -> None:
        self.tree = tree
        self.path: List[BNode] = path if path is not None else []
        self.pos: List[int] = pos if pos is not None else []

    def _is_first(self) -> bool:
        # the very first key is the empty sentinel
        return all(p == 0 for p in self.pos)

    def _is_end(self) -> bool:
        return not self.path or self.pos[-1] >= self.path[-1].nkeys()

    def valid(self) -> bool:
        """Whether the cursor points at a real key-value pair."""
        return not (self._is_first() or self._is_end())

    def deref(self) -> Tuple[bytes, bytes]:
        """The key and value at the current position."""
        if not self.valid():
            raise ValueError("iterator is not at a valid position")
        node = self.path[-1]
        idx = self.pos[-1]
        return node.get_key(idx), node.get_val(idx)

    def _load_kid(self, level: int, last: bool) -> None:
        if level + 1 < len(self.pos):
            node = self.path[level]
            kid = BNode(self.tree.get_page(node.get_ptr(self.pos[level])))
            self.path[level + 1] = kid
            self.pos[level + 1] = kid.nkeys() - 1 if last else 0

    def _prev(self, level: int) -> None:
        if self.pos[level] > 0:
            self.pos[level] -= 1
        elif level > 0:
            self._prev(level - 1)
        else:
            raise RuntimeError("cannot move before the sentinel key")
        self._load_kid(level, last=True)

    def _next(self, level: int) -> None:
        if self.pos[level] + 1 < self.path[level].nkeys():
            self.pos[level] += 1
        elif level > 0:
            self._next(level - 1)
        else:
            self.pos[-1] += 1
            if self.pos[-1] != self.path[-1].nkeys():
                raise RuntimeError("inconsistent iterator state")
            return  # past the last key
        self._load_kid(level, last=False)

    def prev(self) -> None:
        """Move to the previous key; stays put at the sentinel."""
        if not self._is_first():
            self._prev(len(self.path) - 1)

    def next(self) -> None:
        """Move to the next key; stays put past the end."""
        if not self._is_end():
            self._next(len(self.path) - 1)


def seek_le(tree: BTree, key: bytes) -> BIter:
    """Position at the last key that is less than or equal to ``key``."""
    it = BIter(tree)
    ptr = tree.root
    while ptr != 0:
        node = BNode(tree.get_page(ptr))
        idx = node_lookup_le(node, key)
        it.path.append(node)
        it.pos.append(idx)
        ptr = node.get_ptr(idx)
    return it


def seek(tree: BTree, key: bytes, cmp: int) -> BIter:
    """Position at the closest key satisfying ``found <cmp> key``."""
    relation = Compare(cmp)
    it = seek_le(tree, key)
    if not (it._is_first() or not it._is_end()):
        raise RuntimeError("inconsistent iterator state")
    if relation is not Compare.LE:
        cur = b"" if it._is_first() else it.deref()[0]
        if len(key) == 0 or not cmp_ok(cur, relation, key):
            if relation > 0:
                it.next()
            else:
                it.prev()
    if it.valid():
        cur = it.deref()[0]
        if not cmp_ok(cur, relation, key):
            raise RuntimeError("seek landed on a key outside the relation")
    return it