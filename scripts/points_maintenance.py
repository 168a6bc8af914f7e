#!/usr/bin/env python3
"""
Points ledger maintenance for cron.

Usage:
    python3 scripts/points_maintenance.py reconcile [--user-id ID]
    python3 scripts/points_maintenance.py migrate
    python3 scripts/points_maintenance.py expire
"""

from pointledger.cli import main

if __name__ == "__main__":
    main()
