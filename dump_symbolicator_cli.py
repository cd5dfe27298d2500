#!/usr/bin/env python3
"""
Dump Symbolicator - Main Entry Point

Symbolicates Mono crash reports against managed install trees and native
symbol indexes.
"""

import sys
import json
import argparse
from pathlib import Path

import requests

# Add dump_symbolicator to path
sys.path.insert(0, str(Path(__file__).parent))

from dump_symbolicator.config import Config, safe_print
from dump_symbolicator.core import Symbolicator, summarize_scans
from dump_symbolicator.keys import CacheFormatError
from dump_symbolicator.request import CrashFormatError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Dump Symbolicator - resolve Mono crash report frames to source locations',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Symbolicate against an IDE tree, then the runtime tree
  %(prog)s crash.json --root /Applications/IDE.app --root /Library/Mono -o out.json

  # Build and cache indexes once
  %(prog)s --build-index-only --root /Library/Mono --index mono.json.gz

  # Reuse cached indexes and resolve native frames
  %(prog)s crash.json --index ide.json.gz --index mono.json.gz \\
      --native-index mono-sgen.syms --native-binary /usr/bin/mono-sgen
        """
    )

    parser.add_argument(
        'crash_file',
        nargs='?',
        help='Path to crash report (.json)'
    )

    parser.add_argument(
        '--root',
        action='append',
        default=[],
        help='Directory of managed modules to index (repeatable, in priority order)'
    )

    parser.add_argument(
        '--index',
        action='append',
        default=[],
        help='Precomputed index cache (.gz) for the --root at the same position'
    )

    parser.add_argument(
        '--save-index',
        action='store_true',
        help='Write an index cache for every scanned root'
    )

    parser.add_argument(
        '--build-index-only',
        action='store_true',
        help='Scan roots, persist their indexes and exit'
    )

    parser.add_argument(
        '--native-index',
        help='Offline native symbol index (path or http(s) URL)'
    )

    parser.add_argument(
        '--native-binary',
        help='Runtime binary passed to the external symbolizer'
    )

    parser.add_argument(
        '--symbolizer',
        help='Symbolizer command ({binary} is replaced by --native-binary)'
    )

    parser.add_argument(
        '--timeout',
        type=float,
        help='Seconds to wait for each symbolizer answer'
    )

    parser.add_argument(
        '--cache-dir',
        help='Directory for index caches and downloaded native indexes'
    )

    parser.add_argument(
        '--output',
        '-o',
        help='Output file for results (default: console)'
    )

    parser.add_argument(
        '--quiet',
        '-q',
        action='store_true',
        help='Only print the result'
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    config = Config.from_env()
    if args.symbolizer:
        config.symbolizer = args.symbolizer
    if args.timeout is not None:
        config.symbolizer_timeout = args.timeout
    if args.cache_dir:
        config.cache_dir = Path(args.cache_dir)
    if args.quiet:
        config.verbose = False

    if args.build_index_only and not args.root:
        parser.error("--build-index-only requires at least one --root")
    if not args.build_index_only and not args.crash_file:
        parser.error("crash_file is required unless --build-index-only is given")

    if not args.build_index_only and not args.root and not args.index and config.verbose:
        safe_print("[*] No --root or --index given; managed frames will stay unresolved")

    symbolicator = Symbolicator(config)

    try:
        if args.build_index_only:
            result = symbolicator.build_only(args.root, args.index)
            safe_print(json.dumps(summarize_scans(result.scans), indent=2))
        else:
            result = symbolicator.symbolicate(
                args.crash_file,
                roots=args.root,
                index_paths=args.index,
                native_index=args.native_index,
                native_binary=args.native_binary,
                output=args.output,
                save_indexes=args.save_index,
            )
            if not args.output:
                safe_print(result.request.to_json())
    except FileNotFoundError as e:
        safe_print(f"[-] {e}")
        return 1
    except (CrashFormatError, CacheFormatError) as e:
        safe_print(f"[-] {e}")
        return 1
    except requests.RequestException as e:
        safe_print(f"[-] Could not download native index: {e}")
        return 1

    if config.verbose:
        safe_print("")
        safe_print(result.stats.summary())
    return 0


if __name__ == '__main__':
    sys.exit(main())
