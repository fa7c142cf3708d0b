import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from contracts.errors import StorageUnavailable, VersionConflict
from order_service.models import (
    OrderRecord,
    OrderRequest,
    OrderResult,
    OrderStatus,
    RejectionReason,
)


class LedgerProxy:
    """Delegates to the real ledger; subclasses break one operation."""

    def __init__(self, ledger):
        self.ledger = ledger

    def __getattr__(self, name):
        return getattr(self.ledger, name)


class LostDecrementResponses(LedgerProxy):
    """Applies the decrement, then loses the first `lost` responses."""

    def __init__(self, ledger, lost):
        super().__init__(ledger)
        self.lost = lost
        self.calls = 0

    def conditional_decrement(self, *args, **kwargs):
        self.calls += 1
        result = self.ledger.conditional_decrement(*args, **kwargs)
        if self.calls <= self.lost:
            raise StorageUnavailable("response lost")
        return result


class DecrementNeverArrives(LedgerProxy):
    def conditional_decrement(self, *args, **kwargs):
        raise StorageUnavailable("connection refused")


class AlwaysConflicting(LedgerProxy):
    def conditional_decrement(self, item_id, quantity, expected_version, order_id=None):
        raise VersionConflict(item_id, expected_version, expected_version + 1)


class CompetingOrders(LedgerProxy):
    """Lets another order take one unit right before each of this order's decrements."""

    def __init__(self, ledger):
        super().__init__(ledger)
        self.competitors = 0

    def conditional_decrement(self, item_id, quantity, expected_version, order_id=None):
        level = self.ledger.read_stock(item_id)
        if level.available > 0:
            self.competitors += 1
            self.ledger.conditional_decrement(item_id, 1, level.version, order_id=f"rival-{self.competitors}")
        return self.ledger.conditional_decrement(item_id, quantity, expected_version, order_id=order_id)


class ReadUnavailable(LedgerProxy):
    def read_stock(self, item_id):
        raise StorageUnavailable("catalog down")


class FlakyRestore(LedgerProxy):
    def __init__(self, ledger, failures):
        super().__init__(ledger)
        self.failures = failures
        self.calls = 0

    def restore(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageUnavailable("inventory down")
        return self.ledger.restore(*args, **kwargs)


class CommitFails:
    """Commit log whose Pending -> Committed step fails, optionally after being applied."""

    def __init__(self, log, applied=False):
        self.log = log
        self.applied = applied

    def commit(self, order_id):
        if self.applied:
            self.log.commit(order_id)
        raise StorageUnavailable("log down")

    def __getattr__(self, name):
        return getattr(self.log, name)


def order(order_id, quantity, item_id="A"):
    return OrderRequest(orderId=order_id, itemId=item_id, quantity=quantity)


def test_example_sequence(protocol, ledger, catalog):
    catalog.put_item("A", 5)

    first = protocol.process_order(order("o1", 3))
    assert first.result == OrderResult.COMMITTED
    level = ledger.read_stock("A")
    assert (level.available, level.version) == (2, 1)

    second = protocol.process_order(order("o2", 3))
    assert (second.result, second.reason) == (OrderResult.REJECTED, RejectionReason.INSUFFICIENT_STOCK)
    assert ledger.read_stock("A").available == 2

    replay = protocol.process_order(order("o1", 3))
    assert replay.result == OrderResult.COMMITTED
    assert replay.replayed is True
    assert ledger.read_stock("A").available == 2


def test_committed_order_is_recorded(protocol, catalog, commit_log):
    catalog.put_item("A", 5)

    protocol.process_order(order("o1", 2))

    record = commit_log.get("o1")
    assert (record.status, record.quantity, record.itemId) == (OrderStatus.COMMITTED, 2, "A")


def test_conservation_over_a_sequence_of_orders(protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 40)
    rng = random.Random(7)

    committed = 0
    for n in range(30):
        quantity = rng.randint(1, 5)
        outcome = protocol.process_order(order(f"o{n}", quantity))
        if outcome.result == OrderResult.COMMITTED:
            committed += quantity
        available = ledger.read_stock("A").available
        assert available >= 0
        assert 40 - committed == available

    recorded = sum(
        commit_log.get(f"o{n}").quantity
        for n in range(30)
        if commit_log.get(f"o{n}").status == OrderStatus.COMMITTED
    )
    assert recorded == committed


def test_no_lost_decrement_under_concurrency(protocol, ledger, catalog):
    stock, orders = 4, 12
    catalog.put_item("A", stock)

    with ThreadPoolExecutor(max_workers=orders) as pool:
        outcomes = list(pool.map(lambda n: protocol.process_order(order(f"o{n}", 1)), range(orders)))

    committed = [o for o in outcomes if o.result == OrderResult.COMMITTED]
    rejected = [o for o in outcomes if o.result == OrderResult.REJECTED]
    assert len(committed) == stock
    assert len(rejected) == orders - stock
    assert all(o.reason == RejectionReason.INSUFFICIENT_STOCK for o in rejected)
    level = ledger.read_stock("A")
    assert (level.available, level.version) == (0, stock)


def test_stale_quote_on_exhausted_stock_is_insufficient_stock(make_protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 4)
    rivals = CompetingOrders(ledger)
    protocol = make_protocol(rivals)

    outcome = protocol.process_order(order("o1", 1))

    assert (outcome.result, outcome.reason) == (OrderResult.REJECTED, RejectionReason.INSUFFICIENT_STOCK)
    assert rivals.competitors == 4
    level = ledger.read_stock("A")
    assert (level.available, level.version) == (0, 4)
    assert commit_log.get("o1").reason == RejectionReason.INSUFFICIENT_STOCK


def test_concurrent_replays_of_one_order_decrement_once(protocol, ledger, catalog):
    catalog.put_item("A", 10)

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: protocol.process_order(order("o1", 3)), range(8)))

    assert ledger.read_stock("A").available == 7
    assert len([o for o in outcomes if not o.replayed]) == 1
    assert {o.result for o in outcomes} <= {OrderResult.COMMITTED, OrderResult.PENDING}
    assert protocol.process_order(order("o1", 3)).result == OrderResult.COMMITTED


def test_rejection_leaves_no_trace(protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 2)

    outcome = protocol.process_order(order("o1", 3))

    assert (outcome.result, outcome.reason) == (OrderResult.REJECTED, RejectionReason.INSUFFICIENT_STOCK)
    level = ledger.read_stock("A")
    assert (level.available, level.version) == (2, 0)
    record = commit_log.get("o1")
    assert (record.status, record.reason) == (OrderStatus.FAILED, RejectionReason.INSUFFICIENT_STOCK)


def test_replayed_rejection_returns_the_same_rejection(protocol, catalog):
    catalog.put_item("A", 2)
    protocol.process_order(order("o1", 3))
    catalog.put_item("A", 10)

    replay = protocol.process_order(order("o1", 3))

    assert (replay.result, replay.reason, replay.replayed) == (
        OrderResult.REJECTED, RejectionReason.INSUFFICIENT_STOCK, True
    )


def test_unknown_item_is_rejected(protocol, commit_log):
    outcome = protocol.process_order(order("o1", 1, item_id="missing"))

    assert (outcome.result, outcome.reason) == (OrderResult.REJECTED, RejectionReason.UNKNOWN_ITEM)
    assert commit_log.get("o1").status == OrderStatus.FAILED


def test_exhausted_version_conflicts_reject_with_contention(make_protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    protocol = make_protocol(AlwaysConflicting(ledger), max_retries=3)

    outcome = protocol.process_order(order("o1", 1))

    assert (outcome.result, outcome.reason) == (OrderResult.REJECTED, RejectionReason.CONTENTION)
    assert ledger.read_stock("A").available == 5
    assert commit_log.get("o1").reason == RejectionReason.CONTENTION


def test_unreachable_ledger_rejects_with_storage_unavailable(make_protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    protocol = make_protocol(ReadUnavailable(ledger))

    outcome = protocol.process_order(order("o1", 1))

    assert (outcome.result, outcome.reason) == (OrderResult.REJECTED, RejectionReason.STORAGE_UNAVAILABLE)
    assert ledger.read_stock("A").available == 5


def test_compensation_restores_stock_when_commit_fails(make_protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    protocol = make_protocol(ledger, log=CommitFails(commit_log))

    outcome = protocol.process_order(order("o1", 3))

    assert outcome.result == OrderResult.COMPENSATED
    assert ledger.read_stock("A").available == 5
    assert commit_log.get("o1").status == OrderStatus.COMPENSATED

    replay = protocol.process_order(order("o1", 3))
    assert (replay.result, replay.replayed) == (OrderResult.COMPENSATED, True)
    assert ledger.read_stock("A").available == 5


def test_commit_applied_but_acknowledgment_lost_stays_committed(make_protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    protocol = make_protocol(ledger, log=CommitFails(commit_log, applied=True))

    outcome = protocol.process_order(order("o1", 3))

    assert outcome.result == OrderResult.COMMITTED
    assert ledger.read_stock("A").available == 2


def test_compensation_keeps_retrying_and_alerts(make_protocol, ledger, catalog, commit_log, alerts):
    catalog.put_item("A", 5)
    flaky = FlakyRestore(ledger, failures=7)
    protocol = make_protocol(flaky, log=CommitFails(commit_log), alert_after=5)

    outcome = protocol.process_order(order("o1", 3))

    assert outcome.result == OrderResult.COMPENSATED
    assert flaky.calls == 8
    assert len(alerts.alerts) == 1
    assert ledger.read_stock("A").available == 5


def test_lost_decrement_response_is_retried_without_double_decrement(make_protocol, ledger, catalog):
    catalog.put_item("A", 5)
    protocol = make_protocol(LostDecrementResponses(ledger, lost=2))

    outcome = protocol.process_order(order("o1", 3))

    assert outcome.result == OrderResult.COMMITTED
    level = ledger.read_stock("A")
    assert (level.available, level.version) == (2, 1)


def test_decrement_lost_for_good_is_compensated(make_protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    protocol = make_protocol(LostDecrementResponses(ledger, lost=100), max_retries=2)

    outcome = protocol.process_order(order("o1", 3))

    assert outcome.result == OrderResult.COMPENSATED
    assert ledger.read_stock("A").available == 5
    assert commit_log.get("o1").status == OrderStatus.COMPENSATED


def test_decrement_that_never_arrived_ends_failed(make_protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    protocol = make_protocol(DecrementNeverArrives(ledger), max_retries=2)

    outcome = protocol.process_order(order("o1", 3))

    assert (outcome.result, outcome.reason) == (OrderResult.REJECTED, RejectionReason.STORAGE_UNAVAILABLE)
    level = ledger.read_stock("A")
    assert (level.available, level.version) == (5, 0)
    record = commit_log.get("o1")
    assert (record.status, record.reason) == (OrderStatus.FAILED, RejectionReason.STORAGE_UNAVAILABLE)


def pending_record(order_id, quantity, item_id="A"):
    return OrderRecord(orderId=order_id, itemId=item_id, quantity=quantity, status=OrderStatus.PENDING)


def test_reconcile_restores_order_left_pending_after_crash(protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    # crash between the decrement and the commit
    commit_log.append(pending_record("o1", 3))
    ledger.conditional_decrement("A", 3, expected_version=0, order_id="o1")

    outcomes = protocol.reconcile_pending()

    assert [o.result for o in outcomes] == [OrderResult.COMPENSATED]
    assert ledger.read_stock("A").available == 5
    assert commit_log.get("o1").status == OrderStatus.COMPENSATED
    assert commit_log.pending() == []


def test_reconcile_order_that_never_decremented(protocol, ledger, catalog, commit_log):
    catalog.put_item("A", 5)
    commit_log.append(pending_record("o1", 3))

    outcomes = protocol.reconcile_pending()

    assert [(o.result, o.reason) for o in outcomes] == [
        (OrderResult.REJECTED, RejectionReason.STORAGE_UNAVAILABLE)
    ]
    assert ledger.read_stock("A").available == 5
    assert commit_log.get("o1").status == OrderStatus.FAILED


def test_pending_order_is_reported_as_in_flight(protocol, catalog, commit_log):
    catalog.put_item("A", 5)
    commit_log.append(pending_record("o1", 3))

    outcome = protocol.process_order(order("o1", 3))

    assert (outcome.result, outcome.replayed) == (OrderResult.PENDING, True)


@pytest.mark.parametrize("quantity", [0, -1])
def test_order_quantity_must_be_positive(quantity):
    with pytest.raises(ValueError):
        OrderRequest(itemId="A", quantity=quantity)


def test_order_id_is_assigned_when_missing():
    first = OrderRequest(itemId="A", quantity=1)
    second = OrderRequest(itemId="A", quantity=1)
    assert first.orderId and first.orderId != second.orderId
