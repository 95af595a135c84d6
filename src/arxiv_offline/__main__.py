"""Allow ``python -m arxiv_offline``."""

import sys

from arxiv_offline.cli import main

if __name__ == "__main__":
    sys.exit(main())
