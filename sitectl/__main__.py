"""
Entry point for running sitectl via `python -m sitectl`.
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
