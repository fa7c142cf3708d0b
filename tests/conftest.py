import os
import tempfile

import pytest

# application modules read their configuration at import time
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "order_processing_test.log"))

from inventory_service.catalog import CatalogStore, create_store_engine
from inventory_service.ledger import StockLedger
from order_service.commit_log import OrderCommitLog, create_log_engine
from order_service.compensation import CompensationController, RetryPolicy
from order_service.workflow import ReservationProtocol


class RecordingAlerts:
    """Stands in for the RabbitMQ publisher and keeps every alert."""

    def __init__(self):
        self.alerts = []

    def publish_alert(self, order_id, item_id, quantity, attempts, error):
        self.alerts.append(
            {"orderId": order_id, "itemId": item_id, "quantity": quantity, "attempts": attempts, "error": error}
        )
        return True


def no_sleep(seconds):
    pass


@pytest.fixture
def catalog(tmp_path):
    store = CatalogStore(create_store_engine(f"sqlite:///{tmp_path / 'inventory.db'}"))
    store.create_schema()
    yield store
    store.engine.dispose()


@pytest.fixture
def ledger(catalog):
    return StockLedger(catalog)


@pytest.fixture
def commit_log(tmp_path):
    log = OrderCommitLog(create_log_engine(f"sqlite:///{tmp_path / 'orders.db'}"))
    log.create_schema()
    yield log
    log.engine.dispose()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def make_protocol(commit_log, alerts):
    """Builds a protocol around any ledger-like object, with backoff sleeps disabled."""

    def factory(ledger, max_retries=3, log=None, alert_after=5, compensation_retries=None):
        compensation = CompensationController(
            ledger,
            alerts,
            policy=RetryPolicy(max_retries=compensation_retries),
            alert_after=alert_after,
            sleep=no_sleep,
        )
        return ReservationProtocol(
            ledger,
            log if log is not None else commit_log,
            compensation,
            policy=RetryPolicy(max_retries=max_retries),
            sleep=no_sleep,
        )

    return factory


@pytest.fixture
def protocol(make_protocol, ledger):
    return make_protocol(ledger)
