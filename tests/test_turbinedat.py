import concurrent.futures
import io
import pytest
import turbinedat
from turbinedat import DatArchive, DatEntry, BlockStore, lookup, read_chain, read_dir_node

def payload(n: int) -> bytes:
    return bytes((i * 7 + 3) & 0xff for i in range(n))

def store_of(builder):
    return BlockStore(builder.build(), builder.fmt.block_size)

def leaf(builder, ids):
    return builder.add_dir([(i, 0x1000 + i, 2 * i) for i in ids])

@pytest.fixture
def tree(portal):
    children = [leaf(portal, ids) for ids in ([1, 3], [7], [15], [25, 30])]
    root = portal.add_dir([(i, 0x1000 + i, 2 * i) for i in (5, 10, 20)], children)
    return portal, root

def test_block_store_reads_whole_blocks(portal):
    off = portal.alloc()
    portal.put_words(off, 0, 0xdeadbeef)
    store = store_of(portal)

    assert store.read_block(off)[:4] == b"\xef\xbe\xad\xde"
    assert len(store.read_block(off)) == turbinedat.PORTAL.block_size

def test_block_store_short_read_is_an_error(portal):
    off = portal.alloc()
    store = BlockStore(portal.build()[:off + 100], portal.fmt.block_size)

    with pytest.raises(turbinedat.DatIOError):
        store.read_block(off)

def test_block_store_null_offset(portal):
    with pytest.raises(turbinedat.DatNullPointerError):
        store_of(portal).read_block(0)

def test_single_block_file_is_returned_exactly(portal):
    data = payload(turbinedat.PORTAL.payload_size)
    off, length = portal.add_file(data)
    portal.set_root(portal.add_dir([(0x05000001, off, length)]))

    assert DatArchive(portal.build()).fetch(0x05000001) == data

def test_multi_block_chain_is_concatenated(cell):
    data = payload(700)
    off, length = cell.add_file(data)
    cell.set_root(cell.add_dir([(0x0102FFFE, off, length)]))

    assert DatArchive(cell.build(), turbinedat.CELL).fetch(0x0102FFFE) == data

def test_chain_is_cut_to_declared_length(cell):
    data = payload(700)
    off, _ = cell.add_file(data)

    assert read_chain(store_of(cell), off, 300) == data[:300]

def test_next_pointer_top_bit_is_masked(cell):
    data = payload(600)
    off, length = cell.add_file(data, flag_next=True)

    assert read_chain(store_of(cell), off, length) == data

def test_chain_ending_early_is_truncated(portal):
    off, _ = portal.add_file(b"abc")

    with pytest.raises(turbinedat.DatTruncatedFileError):
        read_chain(store_of(portal), off, 5000)

def test_chain_null_pointer(portal):
    store = store_of(portal)

    assert read_chain(store, 0, 0) == b""
    with pytest.raises(turbinedat.DatNullPointerError):
        read_chain(store, 0, 5)

def test_leaf_lookup(portal):
    node = leaf(portal, [5, 10, 20])
    store = store_of(portal)

    assert lookup(store, portal.fmt, node, 10) == DatEntry(10, 0x100a, 20)
    assert lookup(store, portal.fmt, node, 7) is None
    assert lookup(store, portal.fmt, node, 25) is None

@pytest.mark.parametrize("file_id", [1, 3, 5, 7, 10, 15, 20, 25, 30])
def test_internal_lookup_descends_into_bucket(tree, file_id):
    builder, root = tree
    assert lookup(store_of(builder), builder.fmt, root, file_id) == DatEntry(file_id, 0x1000 + file_id, 2 * file_id)

@pytest.mark.parametrize("file_id", [0, 2, 4, 8, 12, 16, 26, 31, 0xffffffff])
def test_internal_lookup_misses(tree, file_id):
    builder, root = tree
    assert lookup(store_of(builder), builder.fmt, root, file_id) is None

def test_decoded_node(tree):
    builder, root = tree
    node = read_dir_node(store_of(builder), builder.fmt, root)

    assert node.entry_count == 3
    assert [e.id for e in node.entries] == [5, 10, 20]
    assert not node.is_leaf

def test_entry_count_at_capacity_is_corrupt(portal):
    words = portal.dir_words([])
    words[turbinedat.MAX_DIR_ENTRIES] = turbinedat.MAX_DIR_ENTRIES
    node = portal.add_dir_words(words)

    with pytest.raises(turbinedat.DatCorruptDirectoryError):
        lookup(store_of(portal), portal.fmt, node, 1)

def test_huge_entry_count_is_corrupt(portal):
    words = portal.dir_words([])
    words[turbinedat.MAX_DIR_ENTRIES] = 0xffffffff
    node = portal.add_dir_words(words)

    with pytest.raises(turbinedat.DatCorruptDirectoryError):
        read_dir_node(store_of(portal), portal.fmt, node)

def test_entries_past_missing_continuation_are_corrupt(cell):
    words = cell.dir_words([])
    words[turbinedat.MAX_DIR_ENTRIES] = 5
    node = cell.add_dir_words(words)

    with pytest.raises(turbinedat.DatCorruptDirectoryError):
        lookup(store_of(cell), cell.fmt, node, 1)

@pytest.mark.parametrize("count", [1, 20, 40, 62])
def test_continuation_blocks_are_stitched(cell, count):
    ids = [0x01000000 + 3 * i for i in range(count)]
    node = leaf(cell, ids)
    store = store_of(cell)

    for i in ids:
        assert lookup(store, cell.fmt, node, i) == DatEntry(i, 0x1000 + i, 2 * i)
    assert lookup(store, cell.fmt, node, ids[-1] + 1) is None

def test_null_branch(portal):
    child = leaf(portal, [1])
    root = portal.add_dir([(5, 0x1000, 1), (10, 0x2000, 2)], [child, 0, child])

    with pytest.raises(turbinedat.DatNullPointerError):
        lookup(store_of(portal), portal.fmt, root, 7)

def test_null_root(portal):
    with pytest.raises(turbinedat.DatNullPointerError):
        DatArchive(portal.build()).fetch(1)

def test_cyclic_directory_is_bounded(portal):
    node = portal.add_dir([(10, 0x1000, 1)], [1, 1])
    portal.put_words(node, 1, node, node)
    portal.set_root(node)
    archive = DatArchive(portal.build())

    with pytest.raises(turbinedat.DatCorruptDirectoryError):
        archive.locate(5)

    with pytest.raises(turbinedat.DatCorruptDirectoryError):
        list(archive.entries())

def test_out_of_order_entries_do_not_crash(portal):
    node = leaf(portal, [20, 5, 10])
    store = store_of(portal)

    for i in (5, 10, 20, 7):
        assert lookup(store, portal.fmt, node, i) in (None, DatEntry(i, 0x1000 + i, 2 * i))

def test_root_pointer_unreadable():
    with pytest.raises(turbinedat.DatIOError):
        DatArchive(bytes(0x100))

def test_directory_past_end_of_file(portal):
    portal.set_root(0x10000)

    with pytest.raises(OSError):
        DatArchive(portal.build()).fetch(1)

def test_continuation_past_end_of_file(cell):
    node = leaf(cell, [1, 2, 3])
    cell.put_words(node, 0, 0x100000)
    cell.set_root(node)
    archive = DatArchive(cell.build(), turbinedat.CELL)

    with pytest.raises(turbinedat.DatIOError):
        archive.fetch(2)

    with pytest.raises(OSError):
        list(archive.entries())

def test_round_trip_two_level_directory(cell):
    off, length = cell.add_file(b"hello world", blocks=3)
    other, other_length = cell.add_file(b"other")

    left = cell.add_dir([(0x00FFFFFF, other, other_length)])
    right = cell.add_dir([(0x0102FFFF, off, length)])
    cell.set_root(cell.add_dir([(0x01000000, other, other_length)], [left, right]))

    archive = DatArchive(cell.build(), turbinedat.CELL)
    assert archive.fetch(0x0102FFFF) == b"hello world"
    assert archive.fetch(0x00FFFFFF) == b"other"
    assert archive.fetch(0x01000000) == b"other"

def test_sentinel_ids_are_not_found(tree):
    builder, root = tree
    builder.set_root(root)
    archive = DatArchive(builder.build())

    for file_id in (0, 0xffffffff):
        assert file_id not in archive
        with pytest.raises(turbinedat.DatFileNotFoundError):
            archive.fetch(file_id)

    with pytest.raises(FileNotFoundError):
        archive.fetch(0)

@pytest.mark.parametrize("file_id", [-1, 1 << 32])
def test_id_out_of_range(tree, file_id):
    builder, root = tree
    builder.set_root(root)

    with pytest.raises(ValueError):
        DatArchive(builder.build()).locate(file_id)

def test_entries_walk_in_key_order(tree):
    builder, root = tree
    builder.set_root(root)
    archive = DatArchive(builder.build())

    assert [e.id for e in archive.entries()] == [1, 3, 5, 7, 10, 15, 20, 25, 30]

def test_entries_walk_in_node_order(tree):
    builder, root = tree
    builder.set_root(root)
    archive = DatArchive(builder.build())

    assert [e.id for e in archive.entries(node_order=True)] == [5, 10, 20, 1, 3, 7, 15, 25, 30]

def test_entries_type_filter(portal):
    portal.set_root(leaf(portal, [0x04000001, 0x05000001, 0x05000002, 0x06000001]))
    archive = DatArchive(portal.build())

    assert [e.id for e in archive.entries(0x05)] == [0x05000001, 0x05000002]

def test_cache_does_not_change_results(tree):
    builder, root = tree
    builder.set_root(root)
    archive = DatArchive(builder.build(), cache=True)

    first = archive.locate(15)
    assert archive.locate(15) == first == DatEntry(15, 0x100f, 30)
    assert archive.located == {15: first}
    assert archive.locate(16) is None
    assert 16 not in archive.located

def test_open_returns_stream(portal):
    off, length = portal.add_file(b"stream me")
    portal.set_root(portal.add_dir([(0x31000001, off, length)]))

    with DatArchive(io.BytesIO(portal.build())) as archive:
        assert archive.open(0x31000001).read() == b"stream me"

def test_concurrent_fetches(cell):
    files = {}
    for i in range(20):
        data = payload(100 + 37 * i)
        files[0x0A000000 + i] = (data, cell.add_file(data))

    cell.set_root(cell.add_dir([(i, off, length) for i, (_, (off, length)) in sorted(files.items())]))
    archive = DatArchive(io.BytesIO(cell.build()), turbinedat.CELL)

    with concurrent.futures.ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(archive.fetch, list(files) * 5))

    assert results == [data for data, _ in files.values()] * 5

def test_from_path_guesses_format(cell, write_dat):
    off, length = cell.add_file(b"land")
    cell.set_root(cell.add_dir([(0x0102FFFF, off, length)]))
    path = write_dat(cell, "cell.dat")

    with DatArchive.from_path(path) as archive:
        assert archive.fmt is turbinedat.CELL
        assert archive.fetch(0x0102FFFF) == b"land"

def test_guess_format():
    assert turbinedat.guess_format("/games/ac/CELL.DAT") is turbinedat.CELL
    assert turbinedat.guess_format("portal.dat") is turbinedat.PORTAL
    assert turbinedat.DAT_FORMATS["cell"].dir_continuations == 3
