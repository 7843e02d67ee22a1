"""Entry point for ``python -m crashpack``.

Usage:
    python -m crashpack process <pid>
    python -m crashpack core <core> [<binary>]
    python -m crashpack --help
"""

import sys

from crashpack.cli import main

if __name__ == "__main__":
    sys.exit(main())
