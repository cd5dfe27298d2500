"""Tests for the ECMA-335 / portable PDB reader."""
import pytest

from dump_symbolicator.keys import SourceRange
from dump_symbolicator.metadata_reader import (
    BlobReader,
    ModuleReader,
    ModuleReadError,
    companion_pdb_path,
    decode_sequence_points,
    format_mvid,
    read_module,
    read_portable_pdb,
)


def test_compressed_uint_widths():
    reader = BlobReader(bytes([0x03, 0x80, 0x80, 0xC0, 0x00, 0x40, 0x00]))
    assert reader.read_compressed_with_size() == (3, 1)
    assert reader.read_compressed_with_size() == (0x80, 2)
    assert reader.read_compressed_with_size() == (0x4000, 4)
    assert reader.at_end()


@pytest.mark.parametrize("encoded,value", [
    (bytes([0x06]), 3),
    (bytes([0x7B]), -3),
    (bytes([0x79]), -4),
    (bytes([0x01]), -64),
    (bytes([0x80, 0x01]), -8192),
    (bytes([0xC0, 0x00, 0x00, 0x01]), -268435456),
])
def test_compressed_int(encoded, value):
    assert BlobReader(encoded).read_compressed_int() == value


def test_blob_reader_stops_at_end():
    reader = BlobReader(bytes([0x80]))
    with pytest.raises(ModuleReadError):
        reader.read_compressed_uint()


def test_decode_sequence_points(sequence_blob):
    """Hidden points are dropped; deltas accumulate across visible points."""
    points = decode_sequence_points(sequence_blob, 1, {1: "src/file.cs"})
    assert points == [
        SourceRange(0x00, 40, 9, 40, 19, "src/file.cs"),
        SourceRange(0x10, 42, 5, 43, 10, "src/file.cs"),
        SourceRange(0x20, 45, 5, 45, 8, "src/file.cs"),
    ]


def test_decode_sequence_points_document_records():
    """Initial document record and a mid-blob document switch."""
    blob = bytes([
        0x00, 0x01,                # LocalSignature, initial document 1
        0x00, 0x00, 0x02, 10, 1,   # IL 0: 10/1 -> 10/3
        0x00, 0x02,                # document record -> 2
        0x08, 0x00, 0x04, 0x02, 0x00,  # IL 8: 11/1 -> 11/5
    ])
    points = decode_sequence_points(blob, 0, {1: "a.cs", 2: "b.cs"})
    assert [(p.offset, p.start_line, p.end_column, p.source_file) for p in points] == [
        (0, 10, 3, "a.cs"),
        (8, 11, 5, "b.cs"),
    ]


def test_decode_empty_blob():
    assert decode_sequence_points(b"", 1, {}) == []


def test_format_mvid():
    assert format_mvid(bytes(range(16))) == "000102030405060708090A0B0C0D0E0F"


def test_companion_pdb_path(tmp_path):
    assert companion_pdb_path(tmp_path / "A.dll") == tmp_path / "A.pdb"


def test_read_module(make_module, mvid, sequence_blob):
    path = make_module("Test.dll", [
        ("", "<Module>", []),
        ("NS", "C", ["M", "N"]),
    ], sequence_points={1: sequence_blob})

    info = read_module(path)
    assert info.module_identity == mvid[1]
    assert info.path == str(path)
    assert [(m.token, m.klass, m.function) for m in info.methods] == [
        (0x06000001, "NS.C", "NS.C::M"),
        (0x06000002, "NS.C", "NS.C::N"),
    ]
    assert info.methods[0].sequence_points[1] == SourceRange(0x10, 42, 5, 43, 10, "src/file.cs")
    assert info.methods[1].sequence_points == []


def test_nested_type_names(make_module):
    path = make_module("Nested.dll", [
        ("NS", "Outer", ["Run"]),
        ("", "Inner", ["Step"]),
    ], nested={2: 1})
    info = read_module(path)
    assert [m.function for m in info.methods] == ["NS.Outer::Run", "NS.Outer/Inner::Step"]


def test_missing_pdb(make_module):
    """Symbols are required by default; the lenient reader indexes without lines."""
    path = make_module("NoPdb.dll", [("NS", "C", ["M"])], with_pdb=False)
    with pytest.raises(ModuleReadError):
        ModuleReader().read_module(path)

    info = ModuleReader(require_symbols=False).read_module(path)
    assert info.methods[0].function == "NS.C::M"
    assert info.methods[0].sequence_points == []


def test_read_portable_pdb(make_module, sequence_blob):
    path = make_module("Test.dll", [("NS", "C", ["M", "N"])], sequence_points={2: sequence_blob})
    methods = read_portable_pdb(companion_pdb_path(path))
    assert list(methods) == [2]
    assert len(methods[2]) == 3


def test_not_a_pe_image(tmp_path):
    bogus = tmp_path / "bogus.dll"
    bogus.write_bytes(b"this is not a module")
    with pytest.raises(ModuleReadError):
        read_module(bogus)


def test_truncated_pe_image(make_module):
    path = make_module("Cut.dll", [("NS", "C", ["M"])])
    path.write_bytes(path.read_bytes()[:0x180])
    with pytest.raises(ModuleReadError):
        read_module(path)


def test_corrupt_pdb(make_module):
    path = make_module("Bad.dll", [("NS", "C", ["M"])])
    companion_pdb_path(path).write_bytes(b"not a pdb")
    with pytest.raises(ModuleReadError):
        read_module(path)
