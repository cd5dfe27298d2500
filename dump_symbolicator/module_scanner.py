"""Scan an install tree for managed modules and build a symbol index."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .config import safe_print
from .metadata_reader import ModuleReader, ModuleReadError
from .symbol_index import SymbolIndex, SymbolIndexBuilder

MODULE_EXTENSIONS = (".dll", ".exe")


@dataclass
class ScanBudget:
    """Upper bounds on what one scan may load. None means unbounded."""
    max_modules: Optional[int] = None
    max_module_bytes: Optional[int] = None


@dataclass
class ScanResult:
    """Outcome of scanning one root."""
    root: str
    index: SymbolIndex
    scanned: List[str] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)  # (path, reason)
    from_cache: bool = False


def find_modules(root) -> List[Path]:
    """Every *.dll / *.exe under root, sorted for a stable scan order."""
    root = Path(root)
    if root.is_file():
        return [root] if root.suffix.lower() in MODULE_EXTENSIONS else []
    found = []
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            if name.lower().endswith(MODULE_EXTENSIONS):
                found.append(Path(dirpath) / name)
    return sorted(found)


def scan_root(root, reader: Optional[ModuleReader] = None,
              budget: Optional[ScanBudget] = None, verbose: bool = True) -> ScanResult:
    """Read every module under root into a new symbol index.

    Modules that cannot be read are skipped and listed in the result; the
    scan itself never fails on a bad file.
    """
    reader = reader or ModuleReader()
    budget = budget or ScanBudget()
    builder = SymbolIndexBuilder()
    result = ScanResult(root=str(root), index=SymbolIndex.empty())

    candidates = find_modules(root)
    if verbose:
        safe_print(f"[SCAN] {len(candidates)} candidate modules under {root}")

    for path in candidates:
        if budget.max_modules is not None and len(result.scanned) >= budget.max_modules:
            result.skipped.append((str(path), "module budget exhausted"))
            continue

        if budget.max_module_bytes is not None:
            try:
                size = path.stat().st_size
            except OSError as e:
                result.skipped.append((str(path), str(e)))
                continue
            if size > budget.max_module_bytes:
                result.skipped.append((str(path), f"larger than {budget.max_module_bytes} bytes"))
                continue

        try:
            module = reader.read_module(path)
        except ModuleReadError as e:
            if verbose:
                safe_print(f"[SCAN] - Skipping {path}: {e}")
            result.skipped.append((str(path), str(e)))
            continue

        for method in module.methods:
            builder.add(module.path, method.klass, method.function,
                        module.module_identity, method.token, method.sequence_points)
        result.scanned.append(str(path))
        if verbose:
            safe_print(f"[SCAN] + {path} {module.module_identity} ({len(module.methods)} methods)")

    result.index = builder.build()
    result.index.source = str(root)
    if verbose:
        safe_print(f"[SCAN] Indexed {len(result.index)} methods from {len(result.scanned)} modules "
                   f"({len(result.skipped)} skipped)")
    return result


def load_or_scan(root, cache_path=None, save_cache: bool = False, rebuild: bool = False,
                 reader: Optional[ModuleReader] = None,
                 budget: Optional[ScanBudget] = None, verbose: bool = True) -> ScanResult:
    """Use the cache for a root when it exists, otherwise scan.

    An existing cache is trusted as-is; it is not checked against the
    modules on disk.
    """
    if cache_path is not None and not rebuild and Path(cache_path).exists():
        if verbose:
            safe_print(f"[INDEX] Loading cached index for {root} from {cache_path}")
        index = SymbolIndex.load(cache_path)
        if verbose:
            safe_print(f"[INDEX] + Loaded {len(index)} methods")
        return ScanResult(root=str(root), index=index, from_cache=True)

    result = scan_root(root, reader=reader, budget=budget, verbose=verbose)
    if save_cache and cache_path is not None:
        saved = result.index.save(cache_path)
        if verbose:
            safe_print(f"[INDEX] + Cached index to: {saved}")
    return result
