from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

from localserve.services.request_status import DisplayStatus, RequestStatus, ResponseStatus


class RequestItem(BaseModel):
    name: str
    service_type: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    image_url: Optional[str] = None


class ProviderResponse(BaseModel):
    status: ResponseStatus
    updated_at: str


class ServiceRequest(BaseModel):
    id: str
    customer_user_id: str
    customer_name: str
    customer_email: str
    customer_address: str = ""
    customer_pincode: str
    customer_city: str = ""
    items: list[RequestItem]
    total_amount: float
    status: RequestStatus = RequestStatus.PENDING
    available_providers: list[str] = Field(default_factory=list)
    provider_responses: Dict[str, ProviderResponse] = Field(default_factory=dict)
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    remarks: str = ""
    created_at: str
    updated_at: str


class ServiceRequestView(BaseModel):
    request: ServiceRequest
    status: DisplayStatus
    label: str
    category: str


class ServiceRequestCreate(BaseModel):
    user_id: str
    customer_name: str
    customer_email: str
    customer_address: str = ""
    customer_pincode: str
    customer_city: str = ""
    items: list[RequestItem]
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    remarks: str = ""


class ProviderDecisionRequest(BaseModel):
    actor_user_id: str
    provider_id: str
    decision: Literal["accepted", "rejected"]


class RequestStatusUpdateRequest(BaseModel):
    actor_user_id: str
    status: RequestStatus
    note: str = ""


class StatusHistoryEntry(BaseModel):
    id: str
    request_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class TimelineEvent(BaseModel):
    status: str
    title: str
    description: str
    category: str
    occurred_at: str


class ServicePincode(BaseModel):
    pincode: str
    city: str = ""


class ProviderProfile(BaseModel):
    id: str
    owner_user_id: str
    name: str
    service_types: list[str]
    service_pincodes: list[str]
    status: Literal["active", "inactive"] = "active"
    provider_since: Optional[str] = None


class ProviderApplicationCreate(BaseModel):
    user_id: str
    user_name: str
    email: str
    phone: str = ""
    business_name: str = ""
    experience: str = ""
    services: list[str]
    service_pincodes: list[ServicePincode]


class ProviderApplication(BaseModel):
    user_id: str
    user_name: str
    email: str
    phone: str = ""
    business_name: str = ""
    experience: str = ""
    services: list[str]
    service_pincodes: list[ServicePincode]
    status: Literal["pending", "approved"]
    application_date: str
    review_date: Optional[str] = None
    reviewed_by: Optional[str] = None


class ApplicationReviewRequest(BaseModel):
    actor_user_id: str
    decision: Literal["approved", "rejected"]


class ApplicationReviewResult(BaseModel):
    user_id: str
    decision: Literal["approved", "rejected"]
    provider: Optional[ProviderProfile] = None


class PaymentOrderRequest(BaseModel):
    user_id: str
    request_id: str


class PaymentOrder(BaseModel):
    payment_id: str
    request_id: str
    gateway_order_id: str
    amount: float
    currency: str = "INR"
    key_id: str = ""


class PaymentVerifyRequest(BaseModel):
    user_id: str
    request_id: str
    gateway_order_id: str
    gateway_payment_id: str
    signature: str


class PaymentRecord(BaseModel):
    id: str
    request_id: str
    user_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    amount: float
    currency: str = "INR"
    status: Literal["created", "completed", "failed"]
    created_at: str
    updated_at: str


class DailyRevenue(BaseModel):
    date: str
    revenue: float
    requests: int


class AnalyticsSummary(BaseModel):
    total_users: int
    users_by_role: Dict[str, int]
    active_providers: int
    pending_applications: int
    total_requests: int
    requests_by_status: Dict[str, int]
    paid_requests: int
    total_revenue: float
    daily: list[DailyRevenue]


class PincodeLocation(BaseModel):
    pincode: str
    city: str
    state: str


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str
    display_name: str = ""
    email: str = ""


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: str = "user"
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: str = "user"
    is_admin: bool = False


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "web"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["request", "application", "payment", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
