"""Module entrypoint for ``python -m docguard``.

All argument parsing and runtime setup happen in ``docguard.cli``.
"""

import sys

from .cli import main


if __name__ == "__main__":
    sys.exit(main())
