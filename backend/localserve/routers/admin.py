from typing import Optional

from fastapi import APIRouter, Header, Query

from localserve.models import (
    AnalyticsSummary,
    ApplicationReviewRequest,
    ApplicationReviewResult,
    PaymentRecord,
    ProviderApplication,
    ServiceRequestView,
)
from localserve.routers.common import assert_admin_authorized, raise_store_http_error, to_view
from localserve.services.marketplace_store import StoreError, marketplace_store
from localserve.services.notification_store import notification_store

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/requests", response_model=list[ServiceRequestView])
def list_all_requests(
    user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_admin_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return [to_view(request) for request in marketplace_store.list_requests(status=status)]
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/analytics", response_model=AnalyticsSummary)
def analytics(
    user_id: str = Query(...),
    days: int = Query(default=30, ge=1, le=365),
    authorization: Optional[str] = Header(default=None),
):
    assert_admin_authorized(actor_user_id=user_id, authorization=authorization)
    return marketplace_store.analytics_summary(days=days)


@router.get("/applications", response_model=list[ProviderApplication])
def list_applications(
    user_id: str = Query(...),
    status: Optional[str] = Query(default="pending"),
    authorization: Optional[str] = Header(default=None),
):
    assert_admin_authorized(actor_user_id=user_id, authorization=authorization)
    return marketplace_store.list_applications(status=status)


@router.post("/applications/{applicant_user_id}/review", response_model=ApplicationReviewResult)
def review_application(
    applicant_user_id: str,
    payload: ApplicationReviewRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_admin_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        result = marketplace_store.review_application(
            user_id=applicant_user_id,
            reviewer_user_id=payload.actor_user_id,
            decision=payload.decision,
        )
    except StoreError as exc:
        raise_store_http_error(exc)

    if result.decision == "approved":
        title = "Welcome aboard as a provider!"
        body = "Your provider application was approved. You will now receive matching service requests."
    else:
        title = "Application not approved"
        body = "Your provider application was not approved this time. You can apply again at any time."
    notification_store.create(
        user_id=applicant_user_id,
        title=title,
        body=body,
        category="application",
        deep_link=f"application:{applicant_user_id}",
    )
    return result


@router.get("/payments", response_model=list[PaymentRecord])
def list_payments(
    user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_admin_authorized(actor_user_id=user_id, authorization=authorization)
    return marketplace_store.list_payments(status=status)
