from construct import *
from PIL import Image
import logging
import os
import sys
import typing
import turbinedat

log = logging.getLogger(__name__)

TEXTURE_TYPE = 0x05
UI_GRAPHIC_TYPE = 0x06
TEXTURE_CLUT = 2

texture_data = Struct(
    "id" / Hex(Int32ul),
    "type" / Hex(Int32ul),
    "width" / Int32ul,
    "height" / Int32ul,
    "pixels" / Bytes(this.width * this.height),
    "palette_id" / If(lambda ctx: ctx.type == TEXTURE_CLUT, Pointer(lambda ctx: 16 + (ctx.width * ctx.height // 4) * 4, Hex(Int32ul))),
)

palette_data = Struct(
    "id" / Hex(Int32ul),
    "color_count" / Int32ul,
    "colors" / GreedyBytes,
)

ui_graphic_data = Struct(
    "id" / Hex(Int32ul),
    "width" / Int32ul,
    "height" / Int32ul,
    "pixels" / Bytes(this.width * this.height * 3),
)

def bgra_to_palette(colors: bytes) -> bytes:
    output = bytearray()
    for i in range(min(len(colors) // 4, 256)):
        b, g, r = colors[i*4:i*4+3]
        output += bytes((r, g, b))

    return bytes(output.ljust(768, b"\0"))

def decode_texture(archive: turbinedat.DatArchive, data: bytes):
    tex = texture_data.parse(data)
    if tex.type != TEXTURE_CLUT:
        log.debug("texture %08x has type %d, skipped", tex.id, tex.type)
        return None

    pal = palette_data.parse(archive.fetch(tex.palette_id))
    if not tex.width or not tex.height:
        return tex, None

    img = Image.frombytes("P", (tex.width, tex.height), tex.pixels)
    img.putpalette(bgra_to_palette(pal.colors))
    return tex, img.convert("RGB")

def decode_ui_graphic(data: bytes):
    gfx = ui_graphic_data.parse(data)
    if not gfx.width or not gfx.height:
        return gfx, None

    return gfx, Image.frombytes("RGB", (gfx.width, gfx.height), gfx.pixels)

def dump_images(archive: turbinedat.DatArchive, out_dir: str=".", report: typing.Callable=print) -> int:
    """Write every texture (0x0500nnnn) and UI graphic (0x0600nnnn) in
    ``archive`` to ``out_dir`` as numbered 24-bit BMP files.

    One index line is reported per image: number, image id, palette id (the
    image id again for UI graphics), width and height.
    """
    os.makedirs(out_dir, exist_ok=True)
    count = 0

    for type_prefix in (TEXTURE_TYPE, UI_GRAPHIC_TYPE):
        for entry in archive.entries(type_prefix):
            if (entry.id >> 16) & 0xff:
                continue

            data = archive.read(entry)

            if type_prefix == TEXTURE_TYPE:
                decoded = decode_texture(archive, data)
                if decoded is None: continue

                hdr, img = decoded
                source = hdr.palette_id

            else:
                hdr, img = decode_ui_graphic(data)
                source = hdr.id

            # empty images keep their number but get no file
            if img is None:
                log.warning("gr%04d (%08x) is empty (%dx%d), no file written", count, entry.id, hdr.width, hdr.height)

            else:
                img.save(os.path.join(out_dir, f"gr{count:04d}.bmp"), "BMP")

            report(f"{count:4d} {hdr.id:08X} {source:08X} {hdr.width:3d} {hdr.height:3d}")
            count += 1

    return count

def main(argv=None) -> int:
    argv = sys.argv if argv is None else argv
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if len(argv) not in (2, 3):
        print("ERROR: Incorrect number of arguments!")
        print("usage: dat_imgdumper.py <PORTAL FILE> [OUTPUT DIR]")
        return 1

    try:
        with turbinedat.DatArchive.from_path(argv[1], turbinedat.PORTAL) as archive:
            dump_images(archive, argv[2] if len(argv) == 3 else ".")

    except turbinedat.DatFileNotFoundError as e:
        print(f"ERROR: Palette {e} could not be found!")
        return 1

    except (OSError, turbinedat.DatError, ConstructError) as e:
        print(f"ERROR: {type(e).__name__}: {e}")
        return 1

    return 0

if __name__ == "__main__":
    sys.exit(main())
