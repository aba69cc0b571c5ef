"""Allow `python -m bluegreen_controller`."""

import sys

from .cli import main


if __name__ == "__main__":
    sys.exit(main())
