#!/usr/bin/env python3
"""
bbolt dump tool - prints every bucket and key/value of a bolt database.

Usage:
    python bbolt_dump.py dump [--schema containerd] <boltdb file>
"""

import sys

from boltkit.cli import main

if __name__ == "__main__":
    sys.exit(main())
