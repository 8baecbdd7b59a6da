"""Allow ``python -m chainvec``."""

import sys

from chainvec.cli import main

if __name__ == "__main__":
    sys.exit(main())
