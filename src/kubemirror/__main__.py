"""
CLI entry point, when used as a module: `python -m kubemirror`.
"""

import sys
from .cli import app

if __name__ == '__main__':
    sys.exit(app())
