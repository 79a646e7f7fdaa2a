from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import logging

from storefront.core.errors import CheckoutError
from storefront.domain.models import Order
from storefront.domain.results import ConfirmResult, ConfirmStatus

router = APIRouter()
logger = logging.getLogger(__name__)

HTTP_STATUS_BY_CODE = {
    "not_found": 404,
    "conflict": 409,
    "cancelled": 409,
    "invalid_request": 422,
    "unknown_rail": 422,
    "invalid_transition": 422,
    "transient": 503,
    "store_unavailable": 503,
    "ledger_unavailable": 503,
    "override_rate_limited": 503,
}


class CheckoutLine(BaseModel):
    amount: Optional[Decimal] = None
    product: Optional[str] = None
    quantity: int = 1


class CheckoutRequest(BaseModel):
    lines: List[CheckoutLine] = Field(..., min_length=1)
    rail: str
    payer_identity: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    target_id: str
    payment_reference: str
    rail: Optional[str] = None


class PaymentFailureRequest(BaseModel):
    code: str
    message: str = ""
    decline_code: Optional[str] = None
    payment_method_type: Optional[str] = None


class BatchConfirmRequest(BaseModel):
    payment_reference: str
    rail: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str


class RecoverRequest(BaseModel):
    action: str = "check"


class CleanupRequest(BaseModel):
    threshold_hours: Optional[float] = None
    dry_run: bool = False
    limit: Optional[int] = None


class VerifyRequest(BaseModel):
    limit: Optional[int] = None


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "batch_id": order.batch_id,
        "rail": order.rail,
        "payment_reference": order.payment_reference,
        "amount_expected": str(order.amount_expected) if order.amount_expected is not None else None,
        "verification_status": order.verification_status,
        "pending_since": order.pending_since.isoformat() if order.pending_since else None,
        "payment_metadata": order.payment_metadata,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


def status_for(error: Optional[CheckoutError]) -> int:
    if error is None:
        return 200
    return HTTP_STATUS_BY_CODE.get(error.code, 500)


def raise_for(error: CheckoutError):
    raise HTTPException(status_code=status_for(error), detail=error.to_dict())


def confirm_status_code(result: ConfirmResult) -> int:
    if result.status == ConfirmStatus.PARTIAL:
        # Some orders went through, the caller retries the rest
        return 207
    if result.status == ConfirmStatus.PENDING_VERIFICATION:
        return 202
    if result.ok:
        return 200
    return status_for(result.error) if result.error else 500


# ---------------------------------------------------------
# Checkout & payment confirmation
# ---------------------------------------------------------

@router.post("/checkouts", status_code=201)
def create_checkout(payload: CheckoutRequest, request: Request):
    service = request.app.state.order_service
    try:
        orders = service.create_checkout([line.model_dump() for line in payload.lines],
                                         payload.rail, payload.payer_identity)
    except CheckoutError as e:
        raise_for(e)
    return {
        "batch_id": orders[0].batch_id,
        "orders": [order_to_dict(o) for o in orders],
    }


@router.post("/payments/confirm")
def confirm_payment(payload: ConfirmPaymentRequest, request: Request):
    """Processor webhooks and the client fallback both land here; repeats are safe."""
    engine = request.app.state.engine
    logger.info(f"📨 Confirm request: target={payload.target_id} reference={payload.payment_reference}")
    result = engine.confirm(payload.target_id, payload.payment_reference, payload.rail)
    return JSONResponse(status_code=confirm_status_code(result), content=result.to_dict())


@router.post("/payments/submit")
def submit_payment(payload: ConfirmPaymentRequest, request: Request):
    """The client reports a payment it sent. Orders wait in pending_payment until it is confirmed or verified."""
    engine = request.app.state.engine
    logger.info(f"📨 Submit request: target={payload.target_id} reference={payload.payment_reference}")
    result = engine.submit_payment(payload.target_id, payload.payment_reference, payload.rail)
    return JSONResponse(status_code=confirm_status_code(result), content=result.to_dict())


@router.post("/payments/{reference}/failure")
def record_payment_failure(reference: str, payload: PaymentFailureRequest, request: Request):
    service = request.app.state.order_service
    try:
        result = service.record_payment_failure(reference, payload.code, payload.message,
                                                payload.decline_code, payload.payment_method_type)
    except CheckoutError as e:
        raise_for(e)
    return result.to_dict()


@router.post("/batches/{batch_id}/confirm")
def confirm_batch(batch_id: str, payload: BatchConfirmRequest, request: Request):
    engine = request.app.state.engine
    batch = engine.batches.confirm_batch(batch_id, payload.payment_reference, payload.rail)
    code = status_for(batch.error)
    if batch.error is None and not batch.fully_confirmed:
        # The caller retries failed_order_ids, pending ones wait for verification
        code = 207 if batch.failed_order_ids else 202
    return JSONResponse(status_code=code, content=batch.to_dict())


@router.get("/payments/{reference}/order")
def find_order_by_reference(reference: str, request: Request):
    service = request.app.state.order_service
    try:
        orders = service.find_by_payment_reference(reference)
    except CheckoutError as e:
        raise_for(e)
    if not orders:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "No order for reference"})
    return {"payment_reference": reference, "orders": [order_to_dict(o) for o in orders]}


# ---------------------------------------------------------
# Merchant & operator tools
# ---------------------------------------------------------

@router.post("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateRequest, request: Request):
    service = request.app.state.order_service
    try:
        order = service.update_status(order_id, payload.status)
    except CheckoutError as e:
        raise_for(e)
    return order_to_dict(order)


@router.post("/orders/{order_id}/recover")
def recover_stale_payment(order_id: str, payload: RecoverRequest, request: Request):
    service = request.app.state.order_service
    result = service.recover_stale_payment(order_id, payload.action)
    return JSONResponse(status_code=status_for(result.error), content=result.to_dict())


# ---------------------------------------------------------
# Reconciliation sweeps
# ---------------------------------------------------------

@router.post("/sweeps/stale-drafts")
def run_stale_draft_cleanup(payload: CleanupRequest, request: Request):
    try:
        result = request.app.state.cleanup.run(payload.threshold_hours, payload.dry_run, payload.limit)
    except CheckoutError as e:
        raise_for(e)
    return result.to_dict()


@router.get("/sweeps/pending-payments")
def pending_payment_report(request: Request, threshold_hours: Optional[float] = None, limit: Optional[int] = None):
    try:
        report = request.app.state.monitor.run(threshold_hours, limit)
    except CheckoutError as e:
        raise_for(e)
    return report.to_dict()


@router.post("/sweeps/verify-transactions")
def verify_pending_transactions(payload: VerifyRequest, request: Request):
    try:
        sweep = request.app.state.transaction_verifier.run(payload.limit)
    except CheckoutError as e:
        raise_for(e)
    return sweep.to_dict()
