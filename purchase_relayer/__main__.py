"""
Entry point for running the relayer as a module.

Usage:
    python -m purchase_relayer
"""

from purchase_relayer.cli import main

if __name__ == "__main__":
    main()
