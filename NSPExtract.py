#!/usr/bin/env python3

import sys
import PFS0
from pathlib import Path

class Extractor:
    def __init__(self, path, *, chunk_size=PFS0.CHUNK_SIZE, quiet=False):
        self.chunk_size = chunk_size
        self.quiet      = quiet

        self.pfs0 = PFS0.PFS0(path)
        self.pfs0.load_metadata()

    def status(self, message):
        if not self.quiet:
            print(message)

    def list_entries(self):
        for i, entry in enumerate(self.pfs0):
            print(f"{i:4}  {self.pfs0.entry_offset(i):#012x}  {entry.size:>14}  {entry.name}")

        print(f"{len(self.pfs0)} entries, {self.pfs0.total_size} bytes")

    def check(self):
        self.pfs0.validate()

        print("OK")

    def select(self, indices=(), suffixes=()):
        for i in indices:
            # Raises for indices outside the table.
            self.pfs0.entry(i)

        selected = list(indices) + [self.pfs0.find_entry_by_suffix(suffix) for suffix in suffixes]

        if len(selected) == 0:
            return list(range(len(self.pfs0)))

        # Keep table order and drop duplicates.
        return sorted(set(selected))

    def dump_ticket(self, out_path=None):
        if out_path is None:
            out_path = Path(f"{self.pfs0.basename}.tik")

        ticket = self.pfs0.read_ticket()
        out_path.write_bytes(ticket)

        self.status(f"Ticket: {out_path} ({len(ticket)} bytes)")

    def extract(self, out_dir=None, indices=None):
        if out_dir is None:
            out_dir = Path(self.pfs0.basename)

        if indices is None:
            indices = range(len(self.pfs0))

        out_dir.mkdir(parents=True, exist_ok=True)

        for i in indices:
            name = self.pfs0.entry(i).name
            if name in ("", ".", "..") or Path(name).name != name or "\\" in name:
                raise PFS0.FormatError(f"Refusing to extract entry {i} with unsafe name {name!r}")

            out_path = out_dir / name
            try:
                with out_path.open("wb") as f:
                    written = self.pfs0.copy_entry(i, f, self.chunk_size)

            except PFS0.PFS0Error:
                out_path.unlink(missing_ok=True)

                raise

            self.status(f"Extracted: {name} ({written} bytes)")

def positive_int(value):
    value = int(value, 0)
    if value <= 0:
        raise ValueError(value)

    return value

def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(prog="nsp-extract", description="Inspect and extract PFS0 containers")
    parser.add_argument("-q", "--quiet", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list")
    list_parser.add_argument("file", type=Path)

    check_parser = subparsers.add_parser("check")
    check_parser.add_argument("file", type=Path)

    ticket_parser = subparsers.add_parser("ticket")
    ticket_parser.add_argument("file", type=Path)
    ticket_parser.add_argument("-o", "--output", type=Path, default=None)

    extract_parser = subparsers.add_parser("extract")
    extract_parser.add_argument("file", type=Path)
    extract_parser.add_argument("-d", "--directory",  type=Path,         default=None)
    extract_parser.add_argument("-i", "--index",      type=int,          action="append", default=[])
    extract_parser.add_argument("-s", "--suffix",                        action="append", default=[])
    extract_parser.add_argument("--chunk-size",       type=positive_int, default=PFS0.CHUNK_SIZE)

    args = parser.parse_args(argv)

    try:
        extractor = Extractor(args.file,
            chunk_size = getattr(args, "chunk_size", PFS0.CHUNK_SIZE),
            quiet      = args.quiet,
        )

        match args.command:
            case "list":
                extractor.list_entries()

            case "check":
                extractor.check()

            case "ticket":
                extractor.dump_ticket(args.output)

            case "extract":
                extractor.extract(args.directory, extractor.select(args.index, args.suffix))

    except (PFS0.PFS0Error, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)

        return 1

    return 0

if __name__ == "__main__":
    sys.exit(main())
