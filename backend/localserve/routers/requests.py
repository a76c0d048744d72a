import json
import os
import queue
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from localserve.auth import assert_actor_authorized
from localserve.models import (
    ProviderDecisionRequest,
    RequestStatusUpdateRequest,
    ServiceRequest,
    ServiceRequestCreate,
    ServiceRequestView,
    TimelineEvent,
)
from localserve.routers.common import assert_request_viewer, raise_store_http_error, to_view
from localserve.services.marketplace_store import StoreError, marketplace_store
from localserve.services.notification_store import notification_store
from localserve.services.request_feed import request_feed
from localserve.services.request_status import build_timeline, describe_status, derive_status

router = APIRouter(prefix="/requests", tags=["requests"])

STREAM_HEARTBEAT_SECONDS = float(os.getenv("REQUEST_STREAM_HEARTBEAT_SECONDS", "15"))


def _deep_link(request_id: str) -> str:
    return f"request:{request_id}"


@router.post("", response_model=ServiceRequestView)
def create_request(
    payload: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        created = marketplace_store.create_request(
            user_id=payload.user_id,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            customer_pincode=payload.customer_pincode,
            items=payload.items,
            customer_address=payload.customer_address,
            customer_city=payload.customer_city,
            delivery_date=payload.delivery_date,
            delivery_time=payload.delivery_time,
            remarks=payload.remarks,
        )
        owners = marketplace_store.list_provider_owner_user_ids(created.available_providers)
    except StoreError as exc:
        raise_store_http_error(exc)

    service_names = ", ".join(item.name for item in created.items)
    notification_store.create_for_users(
        owners,
        title="New service request",
        body=f"{service_names} requested in {created.customer_pincode}",
        category="request",
        deep_link=_deep_link(created.id),
    )
    return to_view(created)


@router.get("", response_model=list[ServiceRequestView])
def list_my_requests(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return [to_view(request) for request in marketplace_store.list_requests_for_customer(user_id)]


@router.get("/provider/{provider_id}", response_model=list[ServiceRequestView])
def list_provider_requests(
    provider_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        provider = marketplace_store.get_provider(provider_id)
    except StoreError as exc:
        raise_store_http_error(exc)
    if provider.owner_user_id != user_id and not marketplace_store.is_admin(user_id):
        raise HTTPException(status_code=403, detail="Only the provider owner can view this inbox")
    return [to_view(request) for request in marketplace_store.list_requests_for_provider(provider_id)]


@router.get("/{request_id}", response_model=ServiceRequestView)
def get_request(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    try:
        request = marketplace_store.get_request(request_id)
    except StoreError as exc:
        raise_store_http_error(exc)
    assert_request_viewer(request, actor_user_id=user_id, authorization=authorization)
    return to_view(request)


@router.post("/{request_id}/respond", response_model=ServiceRequestView)
def respond_to_request(
    request_id: str,
    payload: ProviderDecisionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        updated = marketplace_store.respond_to_request(
            request_id=request_id,
            provider_id=payload.provider_id,
            actor_user_id=payload.actor_user_id,
            decision=payload.decision,
        )
    except StoreError as exc:
        raise_store_http_error(exc)

    view = to_view(updated)
    if payload.decision == "accepted":
        notification_store.create(
            user_id=updated.customer_user_id,
            title="Request accepted",
            body=f"{updated.provider_name or 'A provider'} accepted your service request.",
            category="request",
            deep_link=_deep_link(updated.id),
        )
    elif view.status.value == "rejected":
        notification_store.create(
            user_id=updated.customer_user_id,
            title="Request declined",
            body="Every available provider declined your service request.",
            category="request",
            deep_link=_deep_link(updated.id),
        )
    return view


@router.post("/{request_id}/status", response_model=ServiceRequestView)
def update_request_status(
    request_id: str,
    payload: RequestStatusUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        updated = marketplace_store.update_request_status(
            request_id=request_id,
            actor_user_id=payload.actor_user_id,
            status=payload.status.value,
            note=payload.note,
            is_admin=marketplace_store.is_admin(payload.actor_user_id),
        )
        watchers = [updated.customer_user_id]
        if updated.provider_id:
            watchers.extend(marketplace_store.list_provider_owner_user_ids([updated.provider_id]))
    except StoreError as exc:
        raise_store_http_error(exc)

    label = describe_status(payload.status.value).label
    notification_store.create_for_users(
        [user_id for user_id in watchers if user_id != payload.actor_user_id],
        title=f"Request {label.lower()}",
        body=f"Service request #{updated.id[-8:]} is now {label.lower()}.",
        category="request",
        deep_link=_deep_link(updated.id),
    )
    return to_view(updated)


@router.get("/{request_id}/timeline", response_model=list[TimelineEvent])
def request_timeline(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    try:
        request = marketplace_store.get_request(request_id)
        history = marketplace_store.get_request_history(request_id)
    except StoreError as exc:
        raise_store_http_error(exc)
    assert_request_viewer(request, actor_user_id=user_id, authorization=authorization)
    return build_timeline(request, history)


def _sse_frame(request: ServiceRequest) -> str:
    return f"data: {to_view(request).model_dump_json()}\n\n"


@router.get("/{request_id}/events")
def stream_request_events(
    request_id: str,
    user_id: str = Query(...),
    max_events: Optional[int] = Query(default=None, ge=1),
    authorization: Optional[str] = Header(default=None),
):
    try:
        current = marketplace_store.get_request(request_id)
    except StoreError as exc:
        raise_store_http_error(exc)
    assert_request_viewer(current, actor_user_id=user_id, authorization=authorization)

    updates: "queue.Queue[ServiceRequest]" = queue.Queue()
    unsubscribe = request_feed.subscribe(updates.put, request_id=request_id)

    def event_generator():
        sent = 0
        last_status = None
        try:
            yield _sse_frame(current)
            sent += 1
            last_status = derive_status(current)
            while max_events is None or sent < max_events:
                try:
                    snapshot = updates.get(timeout=STREAM_HEARTBEAT_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse_frame(snapshot)
                sent += 1
                last_status = derive_status(snapshot)
        finally:
            unsubscribe()
        yield f"data: {json.dumps({'type': 'done', 'status': last_status.value if last_status else None})}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_generator(), media_type="text/event-stream")
