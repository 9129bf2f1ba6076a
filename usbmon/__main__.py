#!/usr/bin/env python3
"""
usbmon main entry point for running as a module: python3 -m usbmon
"""

import sys
from usbmon.cli import main

if __name__ == '__main__':
    sys.exit(main())
