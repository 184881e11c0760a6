"""Entry point for ``python -m marketplace_ledger``."""

from marketplace_ledger.cli import main

if __name__ == "__main__":
    main()
