"""
main.py — FastAPI Entry Point for the Order Service

This module provides the REST API interface for placing orders against the
inventory authority. It wires the reservation protocol to its collaborators:
the Inventory Service client, the Order Commit Log and the compensation
controller with its RabbitMQ alert publisher.

Responsibilities:
    • Accept orders via HTTP API and run them through the reservation protocol
    • Serve order records for status lookups
    • Start and stop the background reconciliation loop for Pending orders
    • Provide system health information
"""

import threading
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from contracts.errors import StorageUnavailable

from .clients import AlertPublisher, InventoryClient
from .commit_log import OrderCommitLog, create_log_engine
from .compensation import CompensationController
from .config import (
    ORDER_DATABASE_URL,
    RECONCILE_AFTER_SECONDS,
    RECONCILE_INTERVAL_SECONDS,
)
from .logging_config import get_logger, setup_logging
from .models import OrderOutcome, OrderRecord, OrderRequest, OrderResult
from .workflow import ReservationProtocol, start_reconciliation_loop

# Initialization
setup_logging()
log = get_logger(__name__)

STATUS_BY_RESULT = {
    OrderResult.COMMITTED: 201,
    OrderResult.COMPENSATED: 200,
    OrderResult.REJECTED: 409,
    OrderResult.PENDING: 202,
}


def create_app(
        ledger=None,
        commit_log: Optional[OrderCommitLog] = None,
        alerts=None,
        protocol_options: Optional[dict] = None,
        reconcile: bool = True,
) -> FastAPI:
    """
    Builds the order application.

    Args:
        ledger: Stock ledger to reserve against. Defaults to an InventoryClient
            for INVENTORY_SERVICE_URL.
        commit_log (OrderCommitLog, optional): Defaults to ORDER_DATABASE_URL.
        alerts: Alert publisher. Defaults to RabbitMQ.
        protocol_options (dict, optional): Extra keyword arguments for ReservationProtocol.
        reconcile (bool): Whether to run the reconciliation loop in the background.
    """
    ledger = ledger if ledger is not None else InventoryClient()
    commit_log = commit_log if commit_log is not None else OrderCommitLog(create_log_engine(ORDER_DATABASE_URL))
    alerts = alerts if alerts is not None else AlertPublisher()
    protocol = ReservationProtocol(
        ledger,
        commit_log,
        CompensationController(ledger, alerts),
        **(protocol_options or {}),
    )
    stop = threading.Event()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Creates the order log schema and starts the reconciliation loop.

        The loop runs as a daemon thread and stops when the application shuts down.
        """
        log.info("Order Service starting...")
        commit_log.create_schema()
        if reconcile:
            thread = threading.Thread(
                target=start_reconciliation_loop,
                args=(protocol, timedelta(seconds=RECONCILE_AFTER_SECONDS), RECONCILE_INTERVAL_SECONDS, stop),
                daemon=True,
            )
            thread.start()
            log.info("Reconciliation loop thread started.")
        yield
        stop.set()
        for resource in (ledger, alerts):
            close = getattr(resource, "close", None)
            if close is not None:
                close()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.protocol = protocol
    app.state.commit_log = commit_log

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
        return JSONResponse(status_code=503, content={"detail": exc.to_detail()})

    # API Endpoint: order requester -> Order Service
    @app.post("/v1/orders", response_model=OrderOutcome)
    def place_order(order: OrderRequest):
        """
        Places an order and returns its outcome.

        The handler runs in a worker thread: once the protocol has started it runs
        to a terminal state even if the caller disconnects or times out. A caller
        that timed out retries with the same orderId and gets the recorded result.

        Returns:
            OrderOutcome with status code:
                - 201 Committed (200 when replayed)
                - 200 Compensated
                - 409 Rejected, with reason UnknownItem, InsufficientStock,
                  Contention or StorageUnavailable
                - 202 Pending, while another execution owns the orderId
        """
        log_prefix = f"[Order: {order.orderId}]"
        log.info(f"{log_prefix} New order received via API.")

        outcome = protocol.process_order(order)

        status_code = STATUS_BY_RESULT[outcome.result]
        if outcome.replayed and outcome.result == OrderResult.COMMITTED:
            status_code = 200
        return JSONResponse(status_code=status_code, content=outcome.model_dump(mode="json"))

    @app.get("/v1/orders/{order_id}", response_model=OrderRecord)
    def get_order(order_id: str):
        record = commit_log.get(order_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return record

    # Health Check Endpoint
    @app.get("/health")
    def health_check():
        """
        Simple health check endpoint.

        Can be used by monitoring systems or container orchestrators
        (e.g., Docker, Kubernetes) to verify that the service is running.
        """
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
