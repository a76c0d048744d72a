from typing import NoReturn, Optional

from fastapi import APIRouter, Header, HTTPException

from localserve.auth import assert_actor_authorized
from localserve.models import PaymentOrder, PaymentOrderRequest, PaymentVerifyRequest, ServiceRequestView
from localserve.routers.common import raise_store_http_error, to_view
from localserve.services.marketplace_store import StoreError, marketplace_store
from localserve.services.notification_store import notification_store
from localserve.services.payment_gateway import (
    PaymentGatewayError,
    PaymentGatewayNotConfiguredError,
    payment_gateway,
)

router = APIRouter(prefix="/payments", tags=["payments"])


def _raise_gateway_http_error(exc: PaymentGatewayError) -> NoReturn:
    if isinstance(exc, PaymentGatewayNotConfiguredError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=502, detail=str(exc))


@router.post("/orders", response_model=PaymentOrder)
def create_payment_order(
    payload: PaymentOrderRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        request = marketplace_store.get_payable_request(request_id=payload.request_id, user_id=payload.user_id)
        order = payment_gateway.create_order(amount=request.total_amount, receipt=f"receipt_{request.id}")
        payment = marketplace_store.record_payment_order(
            request_id=request.id,
            user_id=payload.user_id,
            gateway_order_id=str(order["id"]),
            amount=request.total_amount,
            currency=str(order.get("currency", "INR")),
        )
    except StoreError as exc:
        raise_store_http_error(exc)
    except PaymentGatewayError as exc:
        _raise_gateway_http_error(exc)

    return PaymentOrder(
        payment_id=payment.id,
        request_id=payment.request_id,
        gateway_order_id=payment.gateway_order_id,
        amount=payment.amount,
        currency=payment.currency,
        key_id=payment_gateway.key_id,
    )


@router.post("/verify", response_model=ServiceRequestView)
def verify_payment(
    payload: PaymentVerifyRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        authentic = payment_gateway.verify_signature(
            order_id=payload.gateway_order_id,
            payment_id=payload.gateway_payment_id,
            signature=payload.signature,
        )
    except PaymentGatewayError as exc:
        _raise_gateway_http_error(exc)

    try:
        if not authentic:
            marketplace_store.fail_payment(
                request_id=payload.request_id,
                user_id=payload.user_id,
                gateway_order_id=payload.gateway_order_id,
            )
            raise HTTPException(status_code=400, detail="Invalid signature")
        updated = marketplace_store.complete_payment(
            request_id=payload.request_id,
            user_id=payload.user_id,
            gateway_order_id=payload.gateway_order_id,
            gateway_payment_id=payload.gateway_payment_id,
        )
        provider_owners = marketplace_store.list_provider_owner_user_ids(
            [updated.provider_id] if updated.provider_id else []
        )
    except StoreError as exc:
        raise_store_http_error(exc)

    notification_store.create(
        user_id=updated.customer_user_id,
        title="Payment received",
        body=f"Payment of ₹{updated.total_amount:.2f} received. Thank you!",
        category="payment",
        deep_link=f"request:{updated.id}",
    )
    notification_store.create_for_users(
        provider_owners,
        title="Payment received",
        body=f"The customer paid for service request #{updated.id[-8:]}.",
        category="payment",
        deep_link=f"request:{updated.id}",
    )
    return to_view(updated)
