"""
main.py — FastAPI Entry Point for the Inventory Service

The inventory service is the authority over stock levels. It exposes the
catalog (plain get/put of items) and the Stock Ledger operations the order
service composes into its reservation protocol.

Endpoints:
    PUT  /v1/items/{item_id}              — Create an item or overwrite its stock
    GET  /v1/items/{item_id}              — Read a catalog item
    GET  /v1/stock/{item_id}              — readStock
    POST /v1/stock/{item_id}/decrement    — conditionalDecrement
    POST /v1/stock/{item_id}/restore      — restore (compensation only)
    GET  /health

Errors are returned as `{"detail": {"code": ..., "message": ...}}` with the
status codes in `STATUS_BY_ERROR`.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from contracts.errors import (
    DuplicateOrder,
    InsufficientStock,
    InventoryError,
    ItemNotFound,
    StorageUnavailable,
    VersionConflict,
)
from contracts.stock import (
    CatalogItem,
    DecrementRequest,
    PutItemRequest,
    RestoreRequest,
    StockLevel,
    StockMutation,
)

from .catalog import CatalogStore, create_store_engine
from .config import INVENTORY_DATABASE_URL
from .ledger import StockLedger

logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    ItemNotFound: 404,
    InsufficientStock: 409,
    VersionConflict: 409,
    DuplicateOrder: 409,
    StorageUnavailable: 503,
}


def create_app(database_url: str = INVENTORY_DATABASE_URL) -> FastAPI:
    """
    Builds the inventory application around its own catalog database.

    The schema is created when the application starts up.
    """
    catalog = CatalogStore(create_store_engine(database_url))
    ledger = StockLedger(catalog)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        catalog.create_schema()
        log.info(f"Inventory Service started (catalog: {catalog.engine.url!r}).")
        yield
        catalog.engine.dispose()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.state.catalog = catalog
    app.state.ledger = ledger

    @app.exception_handler(InventoryError)
    async def inventory_error_handler(request: Request, exc: InventoryError):
        status_code = STATUS_BY_ERROR.get(type(exc), 500)
        return JSONResponse(status_code=status_code, content={"detail": exc.to_detail()})

    @app.put("/v1/items/{item_id}", response_model=CatalogItem)
    def put_item(item_id: str, body: PutItemRequest):
        return catalog.put_item(item_id, body.available, body.name)

    @app.get("/v1/items/{item_id}", response_model=CatalogItem)
    def get_item(item_id: str):
        item = catalog.get_item(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail=ItemNotFound(item_id).to_detail())
        return item

    @app.get("/v1/stock/{item_id}", response_model=StockLevel)
    def read_stock(item_id: str):
        return ledger.read_stock(item_id)

    @app.post("/v1/stock/{item_id}/decrement", response_model=StockMutation)
    def conditional_decrement(item_id: str, body: DecrementRequest):
        """
        Applies a conditional decrement.

        Rejections are reported as 409 with code INSUFFICIENT_STOCK or
        VERSION_CONFLICT (or DUPLICATE_ORDER for an order that was already
        compensated); an unknown item is a 404.
        """
        return ledger.conditional_decrement(item_id, body.quantity, body.expectedVersion, body.orderId)

    @app.post("/v1/stock/{item_id}/restore", response_model=StockMutation)
    def restore(item_id: str, body: RestoreRequest):
        log.info(f"[Order: {body.orderId}] Compensation: restore request for {item_id}.")
        return ledger.restore(item_id, body.quantity, body.orderId)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": "inventory-service"}

    return app


app = create_app()
