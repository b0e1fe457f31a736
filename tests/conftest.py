import random
import struct

import pytest


def build_pfs0(files, *, magic=b"PFS0"):
    """
    Build a PFS0 image from ``(name, data)`` pairs.

    Entry data is laid out contiguously right after the string table, in
    table order. Offsets are recorded relative to the end of the file table.
    """
    string_table = b""
    name_offsets = []
    for name, _ in files:
        name_offsets.append(len(string_table))
        string_table += name.encode("utf-8") + b"\0"

    records = b""
    offset = len(string_table)
    for (_, data), name_offset in zip(files, name_offsets):
        records += struct.pack("<QQII", offset, len(data), name_offset, 0)
        offset += len(data)

    header = struct.pack("<4sIII", magic, len(files), len(string_table), 0)
    return header + records + string_table + b"".join(data for _, data in files)


def payload(size, seed=0):
    return random.Random(seed).randbytes(size)


@pytest.fixture
def make_pfs0(tmp_path):
    """Write a PFS0 image to ``tmp_path`` and return its path."""
    def _make(files, name="sample.nsp", **kwargs):
        path = tmp_path / name
        path.write_bytes(build_pfs0(files, **kwargs))
        return path

    return _make


@pytest.fixture
def sample_files():
    return [
        ("a.nca", payload(5000, seed=1)),
        ("b.tik", payload(0x2C0, seed=2)),
        ("c.cert", payload(0x700, seed=3)),
    ]


@pytest.fixture
def sample_path(make_pfs0, sample_files):
    return make_pfs0(sample_files)
