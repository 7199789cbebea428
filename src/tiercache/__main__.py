"""Main entry point for the tiercache CLI.

Usage:
    python -m tiercache --help
    tiercache --help  # If installed via pip/uv
"""

from tiercache.cli import main

if __name__ == "__main__":
    main()
