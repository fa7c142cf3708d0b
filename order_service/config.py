"""
config.py — Environment configuration for the Order Service

All settings come from environment variables and fall back to values that work
for a local docker-compose setup.
"""

import os

# Service addresses
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://inventory_service:8002")
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")
RECONCILIATION_QUEUE = os.environ.get("RECONCILIATION_QUEUE", "inventory.reconciliation")

# Storage
ORDER_DATABASE_URL = os.environ.get("ORDER_DATABASE_URL", "sqlite:///orders.db")
SQLITE_BUSY_TIMEOUT = float(os.environ.get("SQLITE_BUSY_TIMEOUT", "30"))

# Timeouts and retries
HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "5.0"))
RESERVATION_MAX_RETRIES = int(os.environ.get("RESERVATION_MAX_RETRIES", "3"))
RETRY_BASE_DELAY = float(os.environ.get("RETRY_BASE_DELAY", "0.05"))
RETRY_MAX_DELAY = float(os.environ.get("RETRY_MAX_DELAY", "1.0"))
COMPENSATION_ALERT_AFTER = int(os.environ.get("COMPENSATION_ALERT_AFTER", "5"))
COMPENSATION_MAX_DELAY = float(os.environ.get("COMPENSATION_MAX_DELAY", "30.0"))

# Pending orders older than this are swept by the reconciliation loop
RECONCILE_AFTER_SECONDS = float(os.environ.get("RECONCILE_AFTER_SECONDS", "60"))
RECONCILE_INTERVAL_SECONDS = float(os.environ.get("RECONCILE_INTERVAL_SECONDS", "30"))

LOG_FILE = os.environ.get("LOG_FILE", "order_processing.log")
