"""A versioned free list of pages, stored as a linked list of pages.

List node layout (little endian)::

    | next | pointer + version | unused |
    |  8B  |     n*(8B+8B)     |   ...  |
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Callable, List, Tuple, Union

from pagekv.btree import BTREE_PAGE_SIZE

Buffer = Union[bytes, bytearray, memoryview]

FREE_LIST_HEADER = 8
FREE_LIST_CAP = (BTREE_PAGE_SIZE - FREE_LIST_HEADER) // 16

_U64 = 1 << 64


def version_before(a: int, b: int) -> bool:
    """Whether version ``a`` precedes ``b``, tolerant of 64-bit wraparound."""
    return (a - b) % _U64 > 1 << 63


def _seq2idx(seq: int) -> int:
    return seq % FREE_LIST_CAP


def _get_next(node: Buffer) -> int:
    return struct.unpack_from("<Q", node, 0)[0]


def _set_next(node: bytearray, nxt: int) -> None:
    struct.pack_into("<Q", node, 0, nxt)


def _get_item(node: Buffer, idx: int) -> Tuple[int, int]:
    return struct.unpack_from("<QQ", node, FREE_LIST_HEADER + 16 * idx)


def _set_item(node: bytearray, idx: int, ptr: int, version: int) -> None:
    if not 0 <= idx < FREE_LIST_CAP:
        raise IndexError(f"free list slot out of range: {idx}")
    struct.pack_into("<QQ", node, FREE_LIST_HEADER + 16 * idx, ptr, version % _U64)


@dataclass
class FreeList:
    """Queue of reusable page pointers, each tagged with the version that freed it."""

    get_page: Callable[[int], Buffer] = field(repr=False)  # read a page
    new_page: Callable[[bytearray], int] = field(repr=False)  # append a page
    set_page: Callable[[int], bytearray] = field(repr=False)  # update a page
    # persisted in the meta page
    head_page: int = 0
    head_seq: int = 0
    tail_page: int = 0
    tail_seq: int = 0
    # in-memory only
    max_seq: int = 0  # items at or past this sequence are not yet consumable
    max_ver: int = 0  # the oldest version still read by someone
    cur_ver: int = 0  # version stamped on newly freed items

    def check(self) -> None:
        """Raise if the list's bookkeeping is inconsistent."""
        if self.head_page == 0 or self.tail_page == 0:
            raise RuntimeError("free list has no node")
        if self.head_seq == self.tail_seq and self.head_page != self.tail_page:
            raise RuntimeError("empty free list spans several nodes")

    def pop_head(self) -> int:
        """Take one reusable pointer from the head; 0 if none is available."""
        ptr, head = self._pop()
        if head != 0:  # recycle the emptied head node
            self.push_tail(head)
        return ptr

    def _pop(self) -> Tuple[int, int]:
        self.check()
        if self.head_seq == self.max_seq:
            return 0, 0  # empty, or only items from the current version
        node = self.get_page(self.head_page)
        ptr, version = _get_item(node, _seq2idx(self.head_seq))
        if version_before(self.max_ver, version):
            return 0, 0  # still visible to some reader
        self.head_seq += 1
        head = 0
        if _seq2idx(self.head_seq) == 0:
            head, self.head_page = self.head_page, _get_next(node)
            if self.head_page == 0:
                raise RuntimeError("free list ends unexpectedly")
        return ptr, head

    def push_tail(self, ptr: int) -> None:
        """Append one freed pointer to the tail."""
        self.check()
        _set_item(self.set_page(self.tail_page), _seq2idx(self.tail_seq), ptr, self.cur_ver)
        self.tail_seq += 1
        if _seq2idx(self.tail_seq) == 0:
            # the tail node is full; reuse a head item or append a new node
            nxt, head = self._pop()
            if nxt == 0:
                nxt = self.new_page(bytearray(BTREE_PAGE_SIZE))
            _set_next(self.set_page(self.tail_page), nxt)
            self.tail_page = nxt
            if head != 0:
                _set_item(self.set_page(self.tail_page), 0, head, self.cur_ver)
                self.tail_seq += 1

    def set_max_ver(self, max_ver: int) -> None:
        """Make items added so far consumable, up to the given reader version."""
        self.max_seq = self.tail_seq
        self.max_ver = max_ver

    def dump(self) -> Tuple[List[int], List[int]]:
        """The queued pointers and the list's own node pages, head to tail."""
        items: List[int] = []
        ptr = self.head_page
        nodes = [ptr]
        seq = self.head_seq
        while seq != self.tail_seq:
            if ptr == 0:
                raise RuntimeError("free list ends unexpectedly")
            node = self.get_page(ptr)
            items.append(_get_item(node, _seq2idx(seq))[0])
            seq += 1
            if _seq2idx(seq) == 0:
                ptr = _get_next(node)
                nodes.append(ptr)
        return items, nodes