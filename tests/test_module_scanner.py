"""Tests for install-tree scanning and index caching."""
from dump_symbolicator.keys import MethodKey
from dump_symbolicator.metadata_reader import ModuleReader
from dump_symbolicator.module_scanner import ScanBudget, find_modules, load_or_scan, scan_root
from dump_symbolicator.symbol_index import SymbolIndex


OTHER_MVID = bytes(range(16, 32))


def _tree(make_module, root, sequence_blob):
    make_module("lib/A.dll", [("NS", "C", ["M"])], sequence_points={1: sequence_blob}, directory=root)
    make_module("bin/B.EXE", [("App", "Program", ["Main"])], mvid=OTHER_MVID, directory=root)
    (root / "lib" / "broken.dll").write_bytes(b"garbage")
    (root / "lib" / "notes.txt").write_text("ignored")


def test_find_modules(tmp_path, make_module, sequence_blob):
    _tree(make_module, tmp_path, sequence_blob)
    names = [p.name for p in find_modules(tmp_path)]
    assert names == ["B.EXE", "A.dll", "broken.dll"]


def test_scan_skips_unreadable_modules(tmp_path, make_module, mvid, sequence_blob):
    """A bad file is reported and skipped; the scan itself succeeds."""
    _tree(make_module, tmp_path, sequence_blob)
    result = scan_root(tmp_path, verbose=False)

    assert len(result.scanned) == 2
    assert [path for path, _ in result.skipped] == [str(tmp_path / "lib" / "broken.dll")]
    assert len(result.index) == 2
    assert MethodKey(mvid[1], 0x06000001) in result.index
    assert result.index.source == str(tmp_path)


def test_scan_module_without_pdb(tmp_path, make_module):
    make_module("A.dll", [("NS", "C", ["M"])], with_pdb=False)
    assert len(scan_root(tmp_path, verbose=False).skipped) == 1

    lenient = scan_root(tmp_path, reader=ModuleReader(require_symbols=False), verbose=False)
    assert len(lenient.index) == 1


def test_scan_budget(tmp_path, make_module, sequence_blob):
    _tree(make_module, tmp_path, sequence_blob)

    limited = scan_root(tmp_path, budget=ScanBudget(max_modules=1), verbose=False)
    assert len(limited.scanned) == 1
    assert any(reason == "module budget exhausted" for _, reason in limited.skipped)

    tiny = scan_root(tmp_path, budget=ScanBudget(max_module_bytes=16), verbose=False)
    assert tiny.scanned == []
    assert len(tiny.skipped) == 3


def test_load_or_scan_uses_cache(tmp_path, make_module, sequence_blob):
    root = tmp_path / "root"
    _tree(make_module, root, sequence_blob)
    cache = tmp_path / "cache" / "root.json.gz"

    first = load_or_scan(root, cache_path=cache, save_cache=True, verbose=False)
    assert not first.from_cache
    assert cache.exists()

    # The cache is trusted even after the tree changes
    (root / "lib" / "A.dll").unlink()
    second = load_or_scan(root, cache_path=cache, verbose=False)
    assert second.from_cache
    assert len(second.index) == len(first.index)

    rebuilt = load_or_scan(root, cache_path=cache, save_cache=True, rebuild=True, verbose=False)
    assert not rebuilt.from_cache
    assert len(rebuilt.index) == 1
    assert len(SymbolIndex.load(cache)) == 1
