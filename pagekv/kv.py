"""A durable key-value store: a copy-on-write B+tree in a single file.

The first page of the file is the meta page::

    | sig | root | page_used | head_page | head_seq | tail_page | tail_seq | ver |
    | 16B |  8B  |     8B    |     8B    |    8B    |     8B    |    8B    |  8B |
"""

from __future__ import annotations

import os
import struct
import threading
from typing import Callable, Dict, List, Optional, Union

from pagekv.btree import BTREE_PAGE_SIZE, BTree
from pagekv.freelist import FreeList

Buffer = Union[bytes, bytearray, memoryview]

DB_SIG = b"BuildYourOwnDB12"
_META = struct.Struct("<16s7Q")
_U64 = 1 << 64


class KVError(Exception):
    """Raised when the database file cannot be opened, read or updated."""


def _create_file_sync(path: str) -> int:
    """Open or create ``path`` and fsync its directory."""
    directory = os.path.dirname(os.path.abspath(path))
    try:
        dirfd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError as err:
        raise KVError(f"open directory: {err}") from err
    try:
        try:
            fd = os.open(
                os.path.basename(path), os.O_RDWR | os.O_CREAT, 0o644, dir_fd=dirfd
            )
        except OSError as err:
            raise KVError(f"open file: {err}") from err
        try:
            os.fsync(dirfd)
        except OSError as err:  # may leave an empty file behind
            os.close(fd)
            raise KVError(f"fsync directory: {err}") from err
        return fd
    finally:
        os.close(dirfd)


def _pwrite_all(fd: int, data: Buffer, offset: int) -> None:
    view = memoryview(data)
    while view:
        written = os.pwrite(fd, view, offset)
        view = view[written:]
        offset += written


class KV:
    """A key-value store kept in one file and updated with two-phase writes."""

    def __init__(
        self, path: Union[str, "os.PathLike[str]"], fsync: Optional[Callable[[int], None]] = None
    ) -> None:
        self.path = os.fspath(path)
        self.fsync: Callable[[int], None] = fsync if fsync is not None else os.fsync
        self.fd = -1
        self.free = FreeList(self._page_read, self._page_append, self._page_write)
        self.tree = BTree(self._page_read, self._page_alloc, self.free.push_tail)
        # page bookkeeping
        self.flushed = 0  # database size in pages
        self.nappend = 0  # pages to be appended
        self.updates: Dict[int, bytearray] = {}  # pending writes, appends included
        self.failed = False  # whether the last update failed
        # concurrency control, used by transactions
        self.lock = threading.Lock()
        self.version = 0
        self.ongoing: List[int] = []
        self.history: list = []

    # ------------------------------------------------------------ lifecycle

    def open(self) -> None:
        """Open or create the database file."""
        self.updates = {}
        self.nappend = 0
        self.fd = _create_file_sync(self.path)
        try:
            size = os.fstat(self.fd).st_size
            self._read_root(size)
        except (OSError, KVError) as err:
            self.close()
            raise KVError(f"KV.Open: {err}") from err

    def close(self) -> None:
        """Release the file descriptor."""
        if self.fd >= 0:
            try:
                os.close(self.fd)
            finally:
                self.fd = -1

    def __enter__(self) -> "KV":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ----------------------------------------------------------- meta page

    def save_meta(self) -> bytes:
        """Serialize the state that the meta page persists."""
        return _META.pack(
            DB_SIG,
            self.tree.root,
            self.flushed,
            self.free.head_page,
            self.free.head_seq,
            self.free.tail_page,
            self.free.tail_seq,
            self.version % _U64,
        )

    def load_meta(self, data: Buffer) -> None:
        """Restore in-memory state from a serialized meta page."""
        (
            self.tree.root,
            self.flushed,
            self.free.head_page,
            self.free.head_seq,
            self.free.tail_page,
            self.free.tail_seq,
            self.version,
        ) = struct.unpack_from("<7Q", data, 16)

    def _read_root(self, file_size: int) -> None:
        if file_size % BTREE_PAGE_SIZE != 0:
            raise KVError("file is not a multiple of pages")
        if file_size == 0:
            # reserve the meta page and an initial free list node
            self.flushed = 2
            self.free.head_page = 1
            self.free.tail_page = 1
            return  # the meta page is written by the first update
        data = self.read_page(0)
        self.load_meta(data)
        self.free.set_max_ver(self.version)
        maxpages = file_size // BTREE_PAGE_SIZE
        bad = data[:16] != DB_SIG
        bad = bad or not 0 < self.flushed <= maxpages
        bad = bad or not 0 < self.tree.root < self.flushed
        bad = bad or not 0 < self.free.head_page < self.flushed
        bad = bad or not 0 < self.free.tail_page < self.flushed
        if bad:
            raise KVError("bad meta page")

    def _update_root(self) -> None:
        try:
            _pwrite_all(self.fd, self.save_meta(), 0)
        except OSError as err:
            raise KVError(f"write meta page: {err}") from err

    # ---------------------------------------------------------------- pages

    def read_page(self, ptr: int) -> bytes:
        """Read a page as it is stored in the file."""
        if self.fd < 0:
            raise KVError("database is not open")
        data = os.pread(self.fd, BTREE_PAGE_SIZE, ptr * BTREE_PAGE_SIZE)
        if len(data) != BTREE_PAGE_SIZE:
            raise KVError(f"bad ptr: {ptr}")
        return data

    def _check_ptr(self, ptr: int) -> None:
        if not ptr < self.flushed + self.nappend:
            raise KVError(f"page pointer out of range: {ptr}")

    def _page_read(self, ptr: int) -> Buffer:
        self._check_ptr(ptr)
        node = self.updates.get(ptr)
        if node is not None:
            return node
        return self.read_page(ptr)

    def _page_alloc(self, node: Buffer) -> int:
        if len(node) != BTREE_PAGE_SIZE:
            raise ValueError("a page must be exactly one page in size")
        ptr = self.free.pop_head()
        if ptr != 0:
            if ptr in self.updates:
                raise RuntimeError(f"page {ptr} reused while pending")
            self.updates[ptr] = bytearray(node)
            return ptr
        return self._page_append(node)

    def _page_append(self, node: Buffer) -> int:
        if len(node) != BTREE_PAGE_SIZE:
            raise ValueError("a page must be exactly one page in size")
        ptr = self.flushed + self.nappend
        self.nappend += 1
        if ptr in self.updates:
            raise RuntimeError(f"page {ptr} appended twice")
        self.updates[ptr] = bytearray(node)
        return ptr

    def _page_write(self, ptr: int) -> bytearray:
        self._check_ptr(ptr)
        node = self.updates.get(ptr)
        if node is not None:
            return node
        node = bytearray(BTREE_PAGE_SIZE)
        # page 1 does not exist yet right after creating an empty database
        if not (ptr == 1 and self.flushed == 2):
            node[:] = self.read_page(ptr)
        self.updates[ptr] = node
        return node

    # -------------------------------------------------------------- updates

    def _write_pages(self) -> None:
        for ptr, node in self.updates.items():
            _pwrite_all(self.fd, node, ptr * BTREE_PAGE_SIZE)
        self.flushed += self.nappend
        self.nappend = 0
        self.updates = {}

    def _update_file(self) -> None:
        self._write_pages()
        self.fsync(self.fd)  # order the page writes before the root update
        self._update_root()
        self.fsync(self.fd)  # make everything persistent

    def update_or_revert(self, meta: bytes) -> None:
        """Persist pending pages, reverting to ``meta`` in memory on failure."""
        if self.failed:
            # the on-disk meta page may not match the in-memory one
            try:
                _pwrite_all(self.fd, meta, 0)
            except OSError as err:
                raise KVError(f"rewrite meta page: {err}") from err
            self.fsync(self.fd)
            self.failed = False
        try:
            self._update_file()
        except Exception:
            self.failed = True
            self.load_meta(meta)
            self.nappend = 0
            self.updates = {}
            raise