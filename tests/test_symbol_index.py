"""Tests for method keys, the symbol index and its gzip cache."""
import gzip

import pytest

from dump_symbolicator.frames import CrashFrame, FrameAlreadyResolvedError
from dump_symbolicator.keys import (
    CacheFormatError,
    MethodIdentity,
    MethodKey,
    SourceRange,
    format_key,
    parse_key,
)
from dump_symbolicator.symbol_index import SymbolIndex, SymbolIndexBuilder, cache_path_for


GUID = "AAAA"


def _points():
    return [
        SourceRange(0x10, 42, 9, 42, 30, "file.cs"),
        SourceRange(0x20, 43, 9, 43, 12, "file.cs"),
        SourceRange(0x30, 45, 5, 45, 6, "file.cs"),
    ]


def _index():
    builder = SymbolIndexBuilder()
    builder.add("/x/A.dll", "NS.C", "NS.C::M", GUID, 0x06000001, _points())
    return builder.build()


def test_key_round_trip():
    """Formatted keys parse back to the same key."""
    key = MethodKey("000102030405060708090A0B0C0D0E0F", 0x06000001)
    text = format_key(key)
    assert text == "000102030405060708090A0B0C0D0E0F:100663297"
    assert str(key) == text
    assert parse_key(text) == key


@pytest.mark.parametrize("text", [
    "no-separator",
    "a:b:3",
    "AAAA:0x10",
    "AAAA:",
    "AAAA:-1",
    "AAAA:4294967296",
])
def test_parse_key_rejects_malformed(text):
    """Keys without exactly one separator or a valid token are rejected."""
    with pytest.raises(CacheFormatError):
        parse_key(text)


def test_parse_key_token_bounds():
    assert parse_key("AAAA:0").token == 0
    assert parse_key("AAAA:4294967295").token == 0xFFFFFFFF


def test_exact_offset_match():
    """Only a sequence point with exactly the frame's offset supplies a line."""
    index = _index()

    frame = CrashFrame.managed(GUID, 0x06000001, 0x20)
    assert index.try_resolve(frame)
    assert frame.start_line == 43
    assert frame.source_file == "file.cs"

    between = CrashFrame.managed(GUID, 0x06000001, 0x25)
    assert index.try_resolve(between)
    assert between.function == "NS.C::M"
    assert between.klass == "NS.C"
    assert between.assembly == "/x/A.dll"
    assert between.start_line is None
    assert between.source_file is None


def test_unknown_key_leaves_frame_untouched():
    index = _index()
    frame = CrashFrame.managed("BBBB", 0x06000001, 0x10)
    assert not index.try_resolve(frame)
    assert not frame.resolved
    assert frame.emit() == {"Guid": "BBBB", "Token": "0x6000001", "Offset": "0x10"}


def test_add_overwrites_same_key():
    """Re-adding a key replaces the earlier entry."""
    builder = SymbolIndexBuilder()
    builder.add("/x/A.dll", "NS.C", "NS.C::Old", GUID, 1, _points())
    builder.add("/y/A.dll", "NS.C", "NS.C::New", GUID, 1, [])
    index = builder.build()
    assert len(index) == 1
    identity = index.identity(MethodKey(GUID, 1))
    assert identity == MethodIdentity("/y/A.dll", "NS.C", "NS.C::New")
    assert index.sequence_points(MethodKey(GUID, 1)) == ()


def test_built_index_is_read_only():
    index = _index()
    with pytest.raises(TypeError):
        index._types[MethodKey("X", 1)] = MethodIdentity("a", "b", "c")


def test_resolving_twice_raises():
    """Resolution output is write-once."""
    index = _index()
    frame = CrashFrame.managed(GUID, 0x06000001, 0x10)
    assert index.try_resolve(frame)
    with pytest.raises(FrameAlreadyResolvedError):
        index.try_resolve(frame)


def test_cache_round_trip(tmp_path):
    """A saved cache loads back with identical content."""
    index = _index()
    path = index.save(cache_path_for(tmp_path, "root"))
    assert path.name == "root.json.gz"

    loaded = SymbolIndex.load(path)
    key = MethodKey(GUID, 0x06000001)
    assert key in loaded
    assert loaded.identity(key) == index.identity(key)
    assert loaded.sequence_points(key) == index.sequence_points(key)
    assert loaded.source == str(path)


def test_cache_document_layout():
    document = _index().to_document()
    assert set(document) == {"Lookup", "Types"}
    assert document["Types"]["AAAA:100663297"] == ["/x/A.dll", "NS.C", "NS.C::M"]
    assert document["Lookup"]["AAAA:100663297"][0] == {
        "Offset": 16, "StartLine": 42, "StartColumn": 9,
        "EndLine": 42, "EndColumn": 30, "Document": "file.cs",
    }


def test_load_missing_cache(tmp_path):
    with pytest.raises(FileNotFoundError):
        SymbolIndex.load(tmp_path / "missing.json.gz")


def test_load_corrupt_cache(tmp_path):
    """Non-gzip data and gzip non-JSON are both format errors."""
    plain = tmp_path / "plain.json.gz"
    plain.write_bytes(b"not gzip at all")
    with pytest.raises(CacheFormatError):
        SymbolIndex.load(plain)

    garbage = tmp_path / "garbage.json.gz"
    with gzip.open(garbage, "wt", encoding="utf-8") as f:
        f.write("{not json")
    with pytest.raises(CacheFormatError):
        SymbolIndex.load(garbage)


def test_load_cache_with_bad_key(tmp_path):
    path = tmp_path / "bad.json.gz"
    with gzip.open(path, "wt", encoding="utf-8") as f:
        f.write('{"Lookup": {"no-separator": []}, "Types": {}}')
    with pytest.raises(CacheFormatError):
        SymbolIndex.load(path)


def test_from_document_requires_sections():
    with pytest.raises(CacheFormatError):
        SymbolIndex.from_document({"Lookup": {}})
    with pytest.raises(CacheFormatError):
        SymbolIndex.from_document([])


def test_cache_path_sanitizes_name(tmp_path):
    assert cache_path_for(tmp_path, "C:\\mono/lib").name == "C_mono_lib.json.gz"
