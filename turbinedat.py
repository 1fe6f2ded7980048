from construct import *
import bisect
import dataclasses
import io
import logging
import os
import threading
import typing

log = logging.getLogger(__name__)

ROOT_DIR_PTR_OFFSET = 0x148
MAX_DIR_ENTRIES = 0x3F
MAX_DIR_DEPTH = 64
NEXT_BLOCK_MASK = 0x7FFFFFFF
MAX_FILE_ID = 0xFFFFFFFF

@dataclasses.dataclass(frozen=True)
class DatFormat:
    name: str
    block_size: int
    dir_continuations: int

    @property
    def payload_size(self):
        return self.block_size - 4

PORTAL = DatFormat("portal", 0x400, 0)
CELL = DatFormat("cell", 0x100, 3)

DAT_FORMATS = {f.name: f for f in (PORTAL, CELL)}

def guess_format(path) -> DatFormat:
    return CELL if "cell" in os.path.basename(os.fspath(path)).lower() else PORTAL

class DatError(Exception):
    pass

class DatIOError(DatError, OSError):
    pass

class DatNullPointerError(DatError):
    pass

class DatCorruptDirectoryError(DatError):
    pass

class DatTruncatedFileError(DatError):
    pass

class DatFileNotFoundError(DatError, FileNotFoundError):
    pass

class DatEntry(typing.NamedTuple):
    id: int
    offset: int
    length: int

dir_entry_data = Struct(
    "id" / Hex(Int32ul),
    "offset" / Hex(Int32ul),
    "length" / Hex(Int32ul),
)

# words 1..63 are branch pointers; word 63 doubles as the entry count
dir_node_data = Struct(
    "next_block" / Hex(Int32ul),
    "branches" / Peek(Array(MAX_DIR_ENTRIES, Hex(Int32ul))),
    Padding(4 * (MAX_DIR_ENTRIES - 1)),
    "entry_count" / Hex(Int32ul),
    Check(this.entry_count < MAX_DIR_ENTRIES),
    "entries" / Array(this.entry_count, dir_entry_data),
    "is_leaf" / Computed(lambda ctx: ctx.branches[0] == 0),
)

chain_block_data = Struct(
    "next_block" / Hex(Int32ul),
    "payload" / GreedyBytes,
)

class BlockStore():
    def __init__(self, file, block_size: int):
        if isinstance(file, (bytes, bytearray, memoryview)):
            file = io.BytesIO(file)

        self.file = file
        self.block_size = block_size
        self.lock = threading.Lock()

    def read(self, offset: int, size: int) -> bytes:
        with self.lock:
            try:
                self.file.seek(offset)
                data = self.file.read(size)

            except (OSError, ValueError) as e:
                raise DatIOError(f"read of 0x{size:x} bytes at {offset:08x} failed: {e}") from e

        if data is None or len(data) != size:
            raise DatIOError(f"short read at {offset:08x}: 0x{0 if data is None else len(data):x} of 0x{size:x} bytes")

        return data

    def read_block(self, offset: int) -> bytes:
        if offset == 0:
            raise DatNullPointerError("block offset is NULL")

        return self.read(offset, self.block_size)

    def close(self):
        self.file.close()

def read_dir_node(store: BlockStore, fmt: DatFormat, offset: int):
    """Read the directory node at ``offset``, following its continuation
    blocks, and decode it with ``dir_node_data``.

    The primary block is kept whole. Each continuation block contributes
    everything after its own word 0, which points at the next continuation.
    """
    words = bytearray(store.read_block(offset))
    next_block = int.from_bytes(words[:4], "little")

    for _ in range(fmt.dir_continuations):
        if next_block == 0: break

        block = store.read_block(next_block)
        next_block = int.from_bytes(block[:4], "little")
        words += block[4:]

    try:
        node = dir_node_data.parse(bytes(words))

    except CheckError as e:
        count = int.from_bytes(words[4 * MAX_DIR_ENTRIES:4 * MAX_DIR_ENTRIES + 4], "little")
        raise DatCorruptDirectoryError(f"directory {offset:08x}: entry count {count} exceeds {MAX_DIR_ENTRIES - 1}") from e

    except StreamError as e:
        raise DatCorruptDirectoryError(f"directory {offset:08x}: entries run past the end of the node") from e

    log.debug("dir %08x: %d entries, leaf=%s", offset, node.entry_count, node.is_leaf)
    return node

def lookup(store: BlockStore, fmt: DatFormat, node_offset: int, file_id: int) -> typing.Optional[DatEntry]:
    for _ in range(MAX_DIR_DEPTH):
        if node_offset == 0:
            raise DatNullPointerError(f"NULL directory pointer while looking up {file_id:08x}")

        node = read_dir_node(store, fmt, node_offset)
        ids = [e.id for e in node.entries]

        i = bisect.bisect_left(ids, file_id)
        if i < node.entry_count and ids[i] == file_id:
            e = node.entries[i]
            return DatEntry(int(e.id), int(e.offset), int(e.length))

        if node.is_leaf:
            return None

        node_offset = node.branches[i]

    raise DatCorruptDirectoryError(f"directory deeper than {MAX_DIR_DEPTH} levels while looking up {file_id:08x}")

def iter_entries(store: BlockStore, fmt: DatFormat, node_offset: int, node_order: bool=False, depth: int=0) -> typing.Iterator[DatEntry]:
    """Walk every entry under ``node_offset``.

    By default entries come out in ascending id order. With ``node_order``
    a node's own entries come first, followed by each subdirectory in turn.
    """
    if depth >= MAX_DIR_DEPTH:
        raise DatCorruptDirectoryError(f"directory deeper than {MAX_DIR_DEPTH} levels")

    if node_offset == 0:
        raise DatNullPointerError("NULL directory pointer")

    node = read_dir_node(store, fmt, node_offset)
    branches = [] if node.is_leaf else node.branches[:node.entry_count + 1]

    if node_order:
        for e in node.entries:
            yield DatEntry(int(e.id), int(e.offset), int(e.length))

        for b in branches:
            yield from iter_entries(store, fmt, b, node_order, depth + 1)

        return

    for i, e in enumerate(node.entries):
        if branches:
            yield from iter_entries(store, fmt, branches[i], node_order, depth + 1)

        yield DatEntry(int(e.id), int(e.offset), int(e.length))

    if branches:
        yield from iter_entries(store, fmt, branches[-1], node_order, depth + 1)

def read_chain(store: BlockStore, offset: int, length: int) -> bytes:
    if length == 0:
        return b""

    if offset == 0:
        raise DatNullPointerError("NULL file pointer")

    first = offset
    output = bytearray()

    while len(output) < length:
        if offset == 0:
            raise DatTruncatedFileError(f"chain at {first:08x} ended after 0x{len(output):x} of 0x{length:x} bytes")

        block = chain_block_data.parse(store.read_block(offset))
        output += block.payload[:length - len(output)]
        offset = block.next_block & NEXT_BLOCK_MASK

    return bytes(output)

class DatArchive():
    def __init__(self, file, fmt: DatFormat=PORTAL, cache: bool=False):
        self.fmt = fmt
        self.store = BlockStore(file, fmt.block_size)
        self.root = int.from_bytes(self.store.read(ROOT_DIR_PTR_OFFSET, 4), "little")
        self.located = {} if cache else None

        log.debug("%s archive, root directory at %08x", fmt.name, self.root)

    @classmethod
    def from_path(cls, path, fmt: typing.Optional[DatFormat]=None, cache: bool=False):
        file = open(path, "rb")

        try:
            return cls(file, guess_format(path) if fmt is None else fmt, cache)

        except DatError:
            file.close()
            raise

    def locate(self, file_id: int) -> typing.Optional[DatEntry]:
        if not 0 <= file_id <= MAX_FILE_ID:
            raise ValueError(f"file id {file_id!r} is not a 32-bit value")

        if self.located is not None and file_id in self.located:
            return self.located[file_id]

        entry = lookup(self.store, self.fmt, self.root, file_id)

        if self.located is not None and entry is not None:
            self.located[file_id] = entry

        return entry

    def read(self, entry: DatEntry) -> bytes:
        return read_chain(self.store, entry.offset, entry.length)

    def fetch(self, file_id: int) -> bytes:
        entry = self.locate(file_id)
        if entry is None:
            raise DatFileNotFoundError(f"{file_id:08X}")

        return self.read(entry)

    def open(self, file_id: int) -> io.BytesIO:
        return io.BytesIO(self.fetch(file_id))

    def entries(self, type_prefix: typing.Optional[int]=None, node_order: bool=False) -> typing.Iterator[DatEntry]:
        for e in iter_entries(self.store, self.fmt, self.root, node_order):
            if type_prefix is None or (e.id >> 24) == type_prefix:
                yield e

    def __contains__(self, file_id):
        return self.locate(file_id) is not None

    def close(self):
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
