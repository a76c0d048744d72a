from typing import NoReturn, Optional

from fastapi import HTTPException

from localserve.auth import assert_actor_authorized, assert_party_authorized
from localserve.models import ServiceRequest, ServiceRequestView
from localserve.services.marketplace_store import (
    StoreConflictError,
    StoreError,
    StoreNotFoundError,
    StorePermissionError,
    marketplace_store,
)
from localserve.services.request_status import derive_status, describe_status


def raise_store_http_error(exc: StoreError) -> NoReturn:
    if isinstance(exc, StoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, StoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def assert_admin_authorized(actor_user_id: str, authorization: Optional[str]) -> None:
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    if not marketplace_store.is_admin(actor_user_id):
        raise HTTPException(status_code=403, detail="Admin access required")


def request_party_user_ids(request: ServiceRequest) -> set[str]:
    """The customer plus the owners of every provider the request was offered to."""
    provider_ids = list(request.available_providers)
    if request.provider_id and request.provider_id not in provider_ids:
        provider_ids.append(request.provider_id)
    return {request.customer_user_id, *marketplace_store.list_provider_owner_user_ids(provider_ids)}


def assert_request_viewer(request: ServiceRequest, actor_user_id: str, authorization: Optional[str]) -> None:
    if marketplace_store.is_admin(actor_user_id):
        assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
        return
    assert_party_authorized(
        actor_user_id=actor_user_id,
        allowed_user_ids=request_party_user_ids(request),
        authorization=authorization,
        detail="Not allowed to view this service request",
    )


def to_view(request: ServiceRequest) -> ServiceRequestView:
    display = describe_status(derive_status(request).value)
    return ServiceRequestView(
        request=request,
        status=display.status,
        label=display.label,
        category=display.category,
    )
