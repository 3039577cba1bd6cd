"""Entry point for ``python -m memcycle``."""

from __future__ import annotations

from memcycle.cli import main

if __name__ == "__main__":
    main()
