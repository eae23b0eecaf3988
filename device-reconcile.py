#!/usr/bin/env python3
"""
Device Lifecycle Cleanup - Autopilot / Intune / Entra ID
========================================================
Finds a device in all three services and removes it in a safe order:
- Intune managed device (optionally wiped first)
- Autopilot device identity
- Entra ID device object(s)
Then polls until every service confirms the device is gone.

Run with --help for options. Settings are read from .env.
"""

import sys

from device_reconcile.cli import main

if __name__ == '__main__':
    sys.exit(main())
