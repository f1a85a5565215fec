#!/usr/bin/env python3
"""
podsplit.py - Wrapper for the podsplit command line

Runs from a checkout without installing the package.
See podsplit/commands.py for the source code.
"""

import sys
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from podsplit.commands import main

if __name__ == '__main__':
    sys.exit(main())
