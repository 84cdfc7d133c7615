#!/usr/bin/env python3
"""Development runner"""
import sys
from pgbackup.cli import main

if __name__ == '__main__':
    # Same as the installed `pgbackup` command; pass --once for a single run
    sys.exit(main())
