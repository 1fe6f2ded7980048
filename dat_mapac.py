from construct import *
import collections
import logging
import struct
import sys
import typing
import turbinedat

log = logging.getLogger(__name__)

LANDSIZE = 2041
LANDBLOCK_POINTS = 9
LANDBLOCK_SQUARES = LANDBLOCK_POINTS - 1
LANDBLOCK_LENGTH = 252
LANDBLOCK_MARKER = 0xFFFF

land_point_data = struct.Struct("<HBB")

landblock_data = Struct(
    "id" / Hex(Int32ul),
    "has_objects" / Hex(Int32ul),
    "topo" / Bytes(2 * LANDBLOCK_POINTS * LANDBLOCK_POINTS),
    "z" / Bytes(LANDBLOCK_POINTS * LANDBLOCK_POINTS),
    "pad" / Int8ul,
)

class LandPoint(typing.NamedTuple):
    type: int
    z: int
    used: int

class LandChange(typing.NamedTuple):
    x: int
    y: int
    old_type: int
    old_z: int
    new_type: int
    new_z: int

class LandGrid():
    """Row-major map of land points; row 0 is the north edge."""

    def __init__(self, size: int=LANDSIZE, data: typing.Optional[bytes]=None):
        self.size = size
        length = size * size * land_point_data.size

        if data is None:
            data = bytes(length)

        if len(data) != length:
            raise ValueError(f"map holds 0x{len(data):x} bytes, expected 0x{length:x}")

        self.data = bytearray(data)

    @classmethod
    def load(cls, path, size: int=LANDSIZE):
        with open(path, "rb") as f:
            return cls(size, f.read())

    def save(self, path):
        with open(path, "wb") as f:
            f.write(self.data)

    def _pos(self, x: int, y: int) -> int:
        if not (0 <= x < self.size and 0 <= y < self.size):
            raise IndexError(f"({x}, {y}) is outside the {self.size}x{self.size} map")

        return (y * self.size + x) * land_point_data.size

    def get(self, x: int, y: int) -> LandPoint:
        return LandPoint(*land_point_data.unpack_from(self.data, self._pos(x, y)))

    def set(self, x: int, y: int, land_type: int, z: int):
        land_point_data.pack_into(self.data, self._pos(x, y), land_type, z, 1)

    def merge_landblock(self, data: bytes) -> typing.List[LandChange]:
        if len(data) != LANDBLOCK_LENGTH:
            raise ValueError(f"landblock is 0x{len(data):x} bytes, expected 0x{LANDBLOCK_LENGTH:x}")

        block = landblock_data.parse(data)
        block_x = block.id >> 24
        block_y = (block.id >> 16) & 0xff

        if block_x == 0xff or block_y == 0xff:
            raise ValueError(f"landblock {block.id:08x} lies outside the map")

        topo = struct.unpack(f"<{LANDBLOCK_POINTS * LANDBLOCK_POINTS}H", block.topo)
        start_x = block_x * LANDBLOCK_SQUARES
        start_y = self.size - block_y * LANDBLOCK_SQUARES - 1
        changes = []

        for x in range(LANDBLOCK_POINTS):
            for y in range(LANDBLOCK_POINTS):
                new_type = topo[x * LANDBLOCK_POINTS + y]
                new_z = block.z[x * LANDBLOCK_POINTS + y]
                old = self.get(start_x + x, start_y - y)

                if old.used and (old.type != new_type or old.z != new_z):
                    changes.append(LandChange(start_x + x, start_y - y, old.type, old.z, new_type, new_z))

                self.set(start_x + x, start_y - y, new_type, new_z)

        return changes

    def land_type_counts(self) -> collections.Counter:
        counts = collections.Counter()
        for land_type, _, used in land_point_data.iter_unpack(self.data):
            if used:
                counts[land_type & 0xff] += 1

        return counts

def merge_cell(archive: turbinedat.DatArchive, grid: LandGrid, report: typing.Callable=print) -> int:
    found = 0

    # each node's own landblocks before its subdirectories
    for entry in archive.entries(node_order=True):
        if (entry.id & LANDBLOCK_MARKER) != LANDBLOCK_MARKER:
            continue

        for c in grid.merge_landblock(archive.read(entry)):
            report(f"({c.x:4d}, {c.y:4d}) was {c.old_type:04X}, {c.old_z:3d}.  Now {c.new_type:04X}, {c.new_z:3d}.")

        found += 1

    return found

def print_usage():
    print("usage:")
    print("dat_mapac.py <CELL DATA FILE> <MAP FILE>")
    print("dat_mapac.py NEWMAP <MAP FILE>")
    print("   WARNING: Argument NEWMAP creates a new map, erasing all previous data!")

def main(argv=None) -> int:
    argv = sys.argv if argv is None else argv
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if len(argv) != 3:
        print("ERROR: Incorrect number of arguments!")
        print_usage()
        return 1

    if argv[1] == "NEWMAP":
        print("Writing new map")
        LandGrid().save(argv[2])
        return 0

    try:
        grid = LandGrid.load(argv[2])

        with turbinedat.DatArchive.from_path(argv[1], turbinedat.CELL) as archive:
            found = merge_cell(archive, grid)

    except (OSError, ValueError, turbinedat.DatError, ConstructError) as e:
        print(f"ERROR: {type(e).__name__}: {e}")
        return 1

    print(f"Total land blocks found: {found}")

    if log.isEnabledFor(logging.DEBUG):
        for t, n in sorted(grid.land_type_counts().items()):
            log.debug("%02X %7d", t, n)

    grid.save(argv[2])
    return 0

if __name__ == "__main__":
    sys.exit(main())
