from typing import Optional

from fastapi import APIRouter, Header, Query

from localserve.auth import assert_actor_authorized
from localserve.models import ProviderApplication, ProviderApplicationCreate, ProviderProfile
from localserve.routers.common import raise_store_http_error
from localserve.services.marketplace_store import StoreError, marketplace_store
from localserve.services.notification_store import notification_store

router = APIRouter(prefix="/providers", tags=["providers"])


@router.post("/applications", response_model=ProviderApplication)
def submit_application(
    payload: ProviderApplicationCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        application = marketplace_store.submit_application(
            user_id=payload.user_id,
            user_name=payload.user_name,
            email=payload.email,
            services=payload.services,
            service_pincodes=payload.service_pincodes,
            phone=payload.phone,
            business_name=payload.business_name,
            experience=payload.experience,
        )
    except StoreError as exc:
        raise_store_http_error(exc)

    notification_store.create(
        user_id=payload.user_id,
        title="Application submitted",
        body="We'll review your application and get back to you soon.",
        category="application",
        deep_link=f"application:{payload.user_id}",
    )
    return application


@router.get("", response_model=list[ProviderProfile])
def list_my_providers(user_id: str = Query(...)):
    return marketplace_store.list_providers_for_user(user_id)


@router.get("/{provider_id}", response_model=ProviderProfile)
def get_provider(provider_id: str):
    try:
        return marketplace_store.get_provider(provider_id)
    except StoreError as exc:
        raise_store_http_error(exc)
