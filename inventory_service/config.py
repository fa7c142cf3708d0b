"""
config.py — Environment configuration for the Inventory Service
"""

import os

INVENTORY_DATABASE_URL = os.environ.get("INVENTORY_DATABASE_URL", "sqlite:///inventory.db")
SQLITE_BUSY_TIMEOUT = float(os.environ.get("SQLITE_BUSY_TIMEOUT", "30"))
