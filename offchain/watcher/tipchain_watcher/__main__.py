"""
Entry point for running the watcher as a module.

Usage:
    python -m tipchain_watcher
"""

from tipchain_watcher.cli import main

if __name__ == "__main__":
    main()
