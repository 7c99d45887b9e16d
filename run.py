"""Run the sitectl command line."""

import sys

from sitectl.main import main

if __name__ == "__main__":
    sys.exit(main())
