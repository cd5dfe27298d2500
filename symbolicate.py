"""Launcher wrapper to keep top-level script while code lives in package.
"""

import sys

from dotenv import load_dotenv

# Load .env before any dump_symbolicator imports (so SYMBOLICATE_CACHE_DIR etc. are set)
load_dotenv()


def main():
    from dump_symbolicator_cli import main as _cli_main
    sys.exit(_cli_main())


if __name__ == "__main__":
    main()
