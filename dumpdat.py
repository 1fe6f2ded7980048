import hexdump
import logging
import os
import shlex
import sys
import typing
import zipfile
import turbinedat

def parse_id(s: str) -> int:
    file_id = int(s, 16)
    if not 0 <= file_id <= turbinedat.MAX_FILE_ID:
        raise ValueError(f"{s} is not a 32-bit id")

    return file_id

def write_file(path: str, data: bytes):
    head = os.path.split(path)[0]
    if head:
        os.makedirs(head, exist_ok=True)

    with open(path, "wb") as f:
        f.write(data)

def dump_zip(s: turbinedat.DatArchive, out_path: str, report: typing.Callable=print) -> int:
    count = 0

    with zipfile.ZipFile(out_path, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for e in s.entries():
            name = f"{e.id:08X}"
            report(name)
            zf.writestr(name, s.read(e))
            count += 1

    return count

def _do_dat_shell(s: turbinedat.DatArchive, path: str):
    print("Turbine DAT shell")
    print(f"source file: {path} ({s.fmt.name}) root @ 0x{s.root:08x}")

    while True:
        try:
            cmd = shlex.split(input(f"[{s.fmt.name}]> "))

        except EOFError:
            break

        try:
            if len(cmd) > 0:
                if cmd[0] == "exit":
                    break

                elif cmd[0] == "ls":
                    if len(cmd) > 2:
                        print(f"{cmd[0]}: too many arguments")

                    else:
                        prefix = int(cmd[1], 16) if len(cmd) == 2 else None
                        for e in s.entries(prefix):
                            print(f"{e.id:08X} {e.offset:08x} {e.length:8d}")

                elif cmd[0] == "dump":
                    if len(cmd) != 3:
                        print(f"{cmd[0]}: usage: {cmd[0]} id destination")

                    else:
                        write_file(cmd[2], s.fetch(parse_id(cmd[1])))

                elif cmd[0] == "cat":
                    if len(cmd) == 1:
                        print(f"{cmd[0]}: usage: {cmd[0]} ids...")

                    else:
                        for f in cmd[1:]:
                            sys.stdout.buffer.write(s.fetch(parse_id(f)))
                        sys.stdout.flush()

                elif cmd[0] in ["hd", "hexdump"]:
                    if len(cmd) == 1:
                        print(f"{cmd[0]}: usage: {cmd[0]} ids...")

                    else:
                        for f in cmd[1:]:
                            hexdump.hexdump(s.fetch(parse_id(f)))

                elif cmd[0] == "format":
                    if len(cmd) == 1:
                        print(s.fmt.name)

                    elif len(cmd) > 2:
                        print(f"{cmd[0]}: too many arguments")

                    elif cmd[1] not in turbinedat.DAT_FORMATS:
                        print(f"{cmd[0]}: unknown format {cmd[1]} (one of {', '.join(turbinedat.DAT_FORMATS)})")

                    else:
                        reopened = turbinedat.DatArchive.from_path(path, turbinedat.DAT_FORMATS[cmd[1]])
                        s.close()
                        s = reopened

                elif cmd[0] == "info":
                    print(f"format: {s.fmt.name}, block size 0x{s.fmt.block_size:x}, {s.fmt.dir_continuations} directory continuations")
                    print(f"root directory: 0x{s.root:08x}")

                elif cmd[0] == "help":
                    print("ls [type] (list ids, optionally only those whose top byte is type)")
                    print("dump id destination (read a file and save it)")
                    print("cat ids... (read files and output to console)")
                    print("hexdump ids... (read files and output in hexdump)")
                    print("hd ids... (short for hexdump)")
                    print("format [portal|cell] (show or change the container format)")
                    print("info (show the container layout)")
                    print("help (show this help message)")

                else:
                    print(f"{cmd[0]}: command not found")

        except (turbinedat.DatError, OSError, ValueError) as e:
            print(f"{cmd[0]}: {type(e).__name__}: {e}")

    s.close()

def print_usage():
    print("usage: dumpdat.py <DAT FILE> [portal|cell]                      (shell)")
    print("       dumpdat.py <DAT FILE> <ZIP FILE> [portal|cell]           (dump everything)")
    print("       dumpdat.py <DAT FILE> <ID> [OUT FILE] [portal|cell]      (dump one id)")
    print("       dumpdat.py -x <DAT FILE> <ID> [portal|cell]             (hexdump one id)")

def main(argv=None) -> int:
    argv = list(sys.argv if argv is None else argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    hexdump_only = "-x" in argv[1:]
    args = [a for a in argv[1:] if a != "-x"]

    fmt = None
    if len(args) > 1 and args[-1] in turbinedat.DAT_FORMATS:
        fmt = turbinedat.DAT_FORMATS[args.pop()]

    if len(args) not in (1, 2, 3):
        print("ERROR: Incorrect number of arguments!")
        print_usage()
        return 1

    zip_mode = len(args) == 2 and args[1].lower().endswith(".zip")
    if hexdump_only and (len(args) != 2 or zip_mode):
        print("ERROR: -x only applies when dumping one id to the console!")
        print_usage()
        return 1

    try:
        s = turbinedat.DatArchive.from_path(args[0], fmt)

    except (OSError, turbinedat.DatError) as e:
        print(f"ERROR: {args[0]} failed to open: {e}")
        return 1

    if len(args) == 1:
        _do_dat_shell(s, args[0])
        return 0

    with s:
        try:
            if zip_mode:
                dump_zip(s, args[1])
                return 0

            file_id = parse_id(args[1])
            data = s.fetch(file_id)

            if hexdump_only:
                hexdump.hexdump(data)

            else:
                write_file(args[2] if len(args) == 3 else f"{file_id:08X}", data)

        except turbinedat.DatFileNotFoundError:
            print(f"ERROR: File {file_id:08X} not found!")
            return 1

        except (OSError, ValueError, turbinedat.DatError) as e:
            print(f"ERROR: {type(e).__name__}: {e}")
            return 1

    return 0

if __name__ == "__main__":
    sys.exit(main())
