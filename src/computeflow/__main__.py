"""
Entry point for running computeflow as a module.

Usage:
    python -m computeflow
"""

import sys

from computeflow.main import main

if __name__ == "__main__":
    sys.exit(main())
