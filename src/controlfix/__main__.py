"""
Entry point for running ControlFix as a module.

Allows running the CLI with:
    python -m controlfix plan --findings-json findings.json
"""

import sys

from controlfix.cli import main

if __name__ == "__main__":
    sys.exit(main())
