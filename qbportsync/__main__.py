"""Allow ``python -m qbportsync``."""

from __future__ import annotations

from qbportsync.cli.main import main

if __name__ == "__main__":
    main()
