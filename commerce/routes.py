from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from commerce.auth import verify_token
from commerce.orders import calculate_total, normalize_page
from commerce.payments import normalize_limit
from commerce.schemas import (
    ConfirmRequest,
    Order,
    OrderCreate,
    OrderPage,
    OrderStatus,
    OrderUpdate,
    Payment,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentPage,
    PaymentStatus,
    Refund,
    RefundRequest,
    StatusChange,
    TotalPreview,
)
from commerce.services import Services

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.get("/health")
def health():
    return {"status": "healthy"}


@router.get("/ready")
def ready(services: Services = Depends(get_services)):
    checks = {"database": services.store.ping(), "cache": services.cache.ping()}
    if not all(checks.values()):
        return JSONResponse(status_code=503, content={"status": "not ready", "checks": checks})
    return {"status": "ready", "checks": checks}


# Orders


@router.post("/orders", response_model=Order, status_code=201)
def create_order(
    request: OrderCreate,
    claims=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.orders.create(
        items=request.items,
        shipping_address=request.shipping_address,
        billing_address=request.billing_address,
        owner_id=claims["sub"],
        payment_method=request.payment_method,
        notes=request.notes,
        currency=request.currency,
    )


@router.post("/orders/calculate")
def calculate_order_total(request: TotalPreview):
    return {
        "total": float(calculate_total(request.items)),
        "currency": request.currency,
        "items": len(request.items),
    }


@router.post("/orders/cancel-stale")
def cancel_stale_orders(
    request: Request,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    timeout = request.app.state.settings.pending_order_timeout_minutes
    return {"cancelled": services.orders.cancel_stale_pending(timedelta(minutes=timeout))}


@router.get("/orders", response_model=OrderPage)
def list_my_orders(
    page: int = 1,
    limit: int = 20,
    claims=Depends(verify_token),
    services: Services = Depends(get_services),
):
    orders, total = services.orders.list_by_user(claims["sub"], page, limit)
    page, limit = normalize_page(page, limit)
    return OrderPage(orders=orders, page=page, limit=limit, total=total)


@router.get("/orders/status/{status}", response_model=List[Order])
def list_orders_by_status(
    status: OrderStatus,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.orders.list_by_status(status)


@router.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, auth=Depends(verify_token), services: Services = Depends(get_services)):
    return services.orders.get(order_id)


@router.put("/orders/{order_id}", response_model=Order)
def update_order(
    order_id: str,
    request: OrderUpdate,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.orders.update(
        order_id,
        items=request.items,
        shipping_address=request.shipping_address,
        billing_address=request.billing_address,
        notes=request.notes,
    )


@router.patch("/orders/{order_id}/status", response_model=Order)
def update_order_status(
    order_id: str,
    request: StatusChange,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.orders.transition_status(order_id, request.status)


@router.delete("/orders/{order_id}", response_model=Order)
def cancel_order(order_id: str, auth=Depends(verify_token), services: Services = Depends(get_services)):
    return services.orders.cancel(order_id)


# Payments


@router.post("/payments/intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    request: PaymentIntentRequest,
    idempotency_key: Optional[str] = Header(None),
    claims=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.payments.create_intent(
        amount=request.amount,
        currency=request.currency,
        order_id=request.order_id,
        user_id=claims["sub"],
        metadata=request.metadata,
        idempotency_key=idempotency_key,
    )


@router.get("/payments", response_model=PaymentPage)
def list_payments(
    user_id: Optional[str] = None,
    order_id: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    limit: int = 20,
    offset: int = 0,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    payments, total = services.payments.list(user_id, order_id, status, limit, offset)
    return PaymentPage(
        payments=payments, total=total, limit=normalize_limit(limit), offset=max(offset, 0)
    )


@router.get("/payments/{payment_id}", response_model=Payment)
def get_payment(payment_id: str, auth=Depends(verify_token), services: Services = Depends(get_services)):
    return services.payments.get(payment_id)


@router.post("/payments/{payment_id}/confirm", response_model=Payment)
def confirm_payment(
    payment_id: str,
    request: ConfirmRequest,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    return services.payments.confirm(payment_id, request.payment_method_id)


@router.post("/payments/{payment_id}/refund", response_model=Refund)
def refund_payment(
    payment_id: str,
    request: Optional[RefundRequest] = None,
    auth=Depends(verify_token),
    services: Services = Depends(get_services),
):
    request = request or RefundRequest()
    return services.payments.refund(payment_id, request.amount, request.reason)


@router.get("/payments/{payment_id}/refunds", response_model=List[Refund])
def list_refunds(payment_id: str, auth=Depends(verify_token), services: Services = Depends(get_services)):
    return services.payments.list_refunds(payment_id)
