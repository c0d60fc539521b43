"""Inventory service API built with FastAPI.

This service is the authoritative catalog snapshot source and the stock
ledger used by the web gateway when ``USE_HTTP_ADAPTERS`` is enabled.
Validation is performed with Pydantic models, while persistence and the
locking reservation logic are delegated to ``repo.InventoryRepo``.

Endpoints:
    GET  /health
    PUT  /products/{product_id}               create or replace a product
    POST /snapshot                            price/stock/active per id
    POST /reservations                        hold stock for an order
    POST /reservations/{order_id}/confirm     held -> confirmed
    POST /reservations/{order_id}/release     held|confirmed -> released
    POST /reservations/expire                 release stale holds
"""

import logging
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger

from repo import InsufficientStockError, InventoryRepo, init_db, ping

app = FastAPI(title="Inventory Service")

ProductId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

# logger JSON
logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # Wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            ping()
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


def get_repo() -> InventoryRepo:
    return InventoryRepo()


class ProductIn(BaseModel):
    """Catalog data for a product.

    Attributes:
        price: Unit price (non-negative, two decimals).
        stock: Units available for new reservations.
        active: Whether the product can be ordered.
        discount_eligible: Whether discount codes apply to it.
    """
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    stock: int = Field(ge=0)
    active: bool = True
    discount_eligible: bool = True


class SnapshotRequest(BaseModel):
    product_ids: List[ProductId] = Field(min_length=1)


class Item(BaseModel):
    """An item to be reserved from inventory."""
    product_id: ProductId
    quantity: int = Field(gt=0)


class ReserveRequest(BaseModel):
    """Request body for the reserve endpoint."""
    order_id: constr(min_length=1, max_length=64)
    items: List[Item] = Field(min_length=1)


class ExpireRequest(BaseModel):
    max_age_seconds: float = Field(ge=0)


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.put("/products/{product_id}")
def upsert_product(product_id: str, body: ProductIn, repo: InventoryRepo = Depends(get_repo)):
    repo.upsert(product_id, body.price, body.stock, body.active, body.discount_eligible)
    return {"product_id": product_id, "stock": body.stock}


@app.post("/snapshot")
def snapshot(req: SnapshotRequest, repo: InventoryRepo = Depends(get_repo)):
    """Return the current snapshot of the requested products; unknown ids are omitted."""
    return {"products": repo.snapshot(req.product_ids)}


@app.post("/reservations", status_code=201)
def reserve(req: ReserveRequest, repo: InventoryRepo = Depends(get_repo)):
    """Hold stock for every item of an order, all or nothing.

    Raises:
        HTTPException: 422 with ``INSUFFICIENT_STOCK`` and the product id
            when any item cannot be held.
    """
    try:
        return repo.reserve(req.order_id, [(it.product_id, it.quantity) for it in req.items])
    except InsufficientStockError as e:
        raise HTTPException(
            status_code=422,
            detail={"reserved": False, "detail": "INSUFFICIENT_STOCK", "product_id": e.product_id},
        )


@app.post("/reservations/expire")
def expire(req: ExpireRequest, repo: InventoryRepo = Depends(get_repo)):
    released = repo.expire(timedelta(seconds=req.max_age_seconds))
    if released:
        logger.info("stale holds expired", extra={"count": len(released)})
    return {"released": released}


@app.post("/reservations/{order_id}/confirm")
def confirm(order_id: str, repo: InventoryRepo = Depends(get_repo)):
    out = repo.confirm(order_id)
    if out is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return out


@app.post("/reservations/{order_id}/unconfirm")
def unconfirm(order_id: str, repo: InventoryRepo = Depends(get_repo)):
    """Revert a confirmation whose order status change was not persisted."""
    out = repo.unconfirm(order_id)
    if out is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return out


@app.post("/reservations/{order_id}/release")
def release(order_id: str, repo: InventoryRepo = Depends(get_repo)):
    out = repo.release(order_id)
    if out is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return out


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
