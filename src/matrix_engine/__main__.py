"""Entry point for ``python -m matrix_engine``."""

import sys

from matrix_engine.cli import main

if __name__ == "__main__":
    sys.exit(main())
