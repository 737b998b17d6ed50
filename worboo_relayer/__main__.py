"""
Entry point for running the relayer as a module.

Usage:
    python -m worboo_relayer
"""

from worboo_relayer.cli import main

if __name__ == "__main__":
    main()
