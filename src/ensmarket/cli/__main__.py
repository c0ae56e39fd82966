"""CLI entry point for ensmarket.cli module.

Enables execution via: python -m ensmarket.cli reconcile --dry-run
"""

from ensmarket.cli.commands import main

if __name__ == "__main__":
    raise SystemExit(main())
