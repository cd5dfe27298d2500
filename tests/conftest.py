"""Shared fixtures: synthetic managed modules and portable PDBs built with struct."""
import os
import struct
import sys
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


TEST_MVID = bytes(range(16))
TEST_MVID_TEXT = "000102030405060708090A0B0C0D0E0F"

# LocalSignature 0, then:
#   IL 0x00: line 40 col 9  -> 40/19
#   IL 0x10: line 42 col 5  -> 43/10
#   IL 0x14: hidden
#   IL 0x20: line 45 col 5  -> 45/8
SEQUENCE_BLOB = bytes([
    0x00,
    0x00, 0x00, 0x0A, 40, 9,
    0x10, 0x01, 0x0A, 0x04, 0x79,
    0x04, 0x00, 0x00,
    0x0C, 0x00, 0x03, 0x06, 0x00,
])


def compressed_uint(value: int) -> bytes:
    if value < 0x80:
        return bytes([value])
    if value < 0x4000:
        return struct.pack(">H", value | 0x8000)
    return struct.pack(">I", value | 0xC0000000)


def _pad4(data: bytes) -> bytes:
    return bytes(data) + b"\x00" * (-len(data) % 4)


class Heaps:
    def __init__(self):
        self.strings = bytearray(b"\x00")
        self.blobs = bytearray(b"\x00")
        self.guids = bytearray()

    def string(self, text: str) -> int:
        if not text:
            return 0
        offset = len(self.strings)
        self.strings += text.encode("utf-8") + b"\x00"
        return offset

    def blob(self, data: bytes) -> int:
        if not data:
            return 0
        offset = len(self.blobs)
        self.blobs += compressed_uint(len(data)) + data
        return offset

    def guid(self, raw: bytes) -> int:
        self.guids += raw
        return len(self.guids) // 16


def table_stream(tables):
    valid = 0
    for table in tables:
        valid |= 1 << table
    out = struct.pack("<IBBBBQQ", 0, 2, 0, 0, 1, valid, 0)
    for table in sorted(tables):
        out += struct.pack("<I", len(tables[table]))
    for table in sorted(tables):
        out += b"".join(tables[table])
    return out


def metadata_root(streams):
    version = b"v4.0.30319\x00\x00"
    header = struct.pack("<IHHII", 0x424A5342, 1, 1, 0, len(version)) + version
    header += struct.pack("<HH", 0, len(streams))
    offset = len(header) + sum(8 + len(_pad4(name.encode() + b"\x00")) for name, _ in streams)
    headers = b""
    body = b""
    for name, data in streams:
        data = _pad4(data)
        headers += struct.pack("<II", offset, len(data)) + _pad4(name.encode() + b"\x00")
        body += data
        offset += len(data)
    return header + headers + body


def build_pdb(documents, method_blobs):
    heaps = Heaps()
    doc_rows = []
    for path in documents:
        parts = path.split("/")
        name = b"/" + b"".join(compressed_uint(heaps.blob(p.encode())) for p in parts)
        doc_rows.append(struct.pack("<HHHH", heaps.blob(name), 0, 0, 0))
    mdi_rows = [
        struct.pack("<HH", 1 if blob else 0, heaps.blob(blob) if blob else 0)
        for blob in method_blobs
    ]
    pdb_stream = b"\x00" * 20 + struct.pack("<IQ", 0, 0)
    return metadata_root([
        ("#Pdb", pdb_stream),
        ("#~", table_stream({0x30: doc_rows, 0x31: mdi_rows})),
        ("#Strings", heaps.strings),
        ("#Blob", heaps.blobs),
        ("#GUID", heaps.guids),
    ])


def wrap_pe(metadata: bytes) -> bytes:
    section_rva = 0x2000
    raw_ptr = 0x200
    cli_size = 72

    cli = struct.pack("<IHHII", cli_size, 2, 5, section_rva + cli_size, len(metadata)).ljust(cli_size, b"\x00")
    section_data = cli + metadata
    raw_size = len(section_data) + (-len(section_data) % 0x200)

    dos = bytearray(0x40)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x40)
    file_header = struct.pack("<HHIIIHH", 0x14C, 1, 0, 0, 0, 0xE0, 0x2102)
    optional = bytearray(0xE0)
    struct.pack_into("<H", optional, 0, 0x10B)
    struct.pack_into("<I", optional, 92, 16)
    struct.pack_into("<II", optional, 96 + 14 * 8, section_rva, cli_size)
    section = struct.pack("<8sIIIIIIHHI", b".text", len(section_data), section_rva,
                          raw_size, raw_ptr, 0, 0, 0, 0, 0x60000020)

    headers = bytes(dos) + b"PE\x00\x00" + file_header + bytes(optional) + section
    return headers.ljust(raw_ptr, b"\x00") + section_data.ljust(raw_size, b"\x00")


def build_assembly(mvid: bytes, types, nested=None) -> bytes:
    """types: list of (namespace, name, [method names]); nested: {nested rid: enclosing rid}"""
    heaps = Heaps()
    module_row = struct.pack("<HHHHH", 0, heaps.string("Test.dll"), heaps.guid(mvid), 0, 0)
    typedef_rows = []
    methoddef_rows = []
    for namespace, name, methods in types:
        typedef_rows.append(struct.pack("<IHHHHH", 0, heaps.string(name), heaps.string(namespace),
                                        0, 1, len(methoddef_rows) + 1))
        for method in methods:
            methoddef_rows.append(struct.pack("<IHHHHH", 0, 0, 0, heaps.string(method), 0, 1))

    tables = {0x00: [module_row], 0x02: typedef_rows, 0x06: methoddef_rows}
    if nested:
        tables[0x29] = [struct.pack("<HH", n, e) for n, e in sorted(nested.items())]

    return wrap_pe(metadata_root([
        ("#~", table_stream(tables)),
        ("#Strings", heaps.strings),
        ("#GUID", heaps.guids),
        ("#Blob", heaps.blobs),
    ]))


@pytest.fixture
def sequence_blob():
    return SEQUENCE_BLOB


@pytest.fixture
def mvid():
    return TEST_MVID, TEST_MVID_TEXT


@pytest.fixture
def make_module(tmp_path):
    """Factory writing <name> (+ companion .pdb) and returning its path."""
    def _make(name, types, mvid=TEST_MVID, sequence_points=None,
              documents=("src/file.cs",), nested=None, with_pdb=True, directory=None):
        path = Path(directory or tmp_path) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_assembly(mvid, types, nested))
        if with_pdb:
            count = sum(len(methods) for _, _, methods in types)
            blobs = [(sequence_points or {}).get(rid) for rid in range(1, count + 1)]
            path.with_suffix(".pdb").write_bytes(build_pdb(list(documents), blobs))
        return path
    return _make
