"""Service-request status vocabulary and the customer-facing status derivation.

The stored ``status`` of a request only moves when a customer, provider or
admin overwrites it. While it sits at ``pending`` the interesting state lives
in ``provider_responses``, one slot per eligible provider. ``derive_status``
reduces the two into the single status shown to the customer. It is computed
on every read and never persisted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from localserve.models import ServiceRequest, StatusHistoryEntry, TimelineEvent


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class ResponseStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class DisplayStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


TERMINAL_FOR_DISPLAY = frozenset({RequestStatus.CANCELLED, RequestStatus.PAID, RequestStatus.COMPLETED})


@dataclass(frozen=True)
class StatusDisplay:
    status: DisplayStatus
    label: str
    category: str


_DISPLAY_TABLE = {
    DisplayStatus.PENDING: ("Pending", "warning"),
    DisplayStatus.ACCEPTED: ("Accepted", "info"),
    DisplayStatus.REJECTED: ("Rejected", "danger"),
    DisplayStatus.IN_PROGRESS: ("In Progress", "info"),
    DisplayStatus.COMPLETED: ("Completed", "success"),
    DisplayStatus.PAID: ("Paid", "accent"),
    DisplayStatus.CANCELLED: ("Cancelled", "muted"),
    DisplayStatus.REFUNDED: ("Refunded", "muted"),
    DisplayStatus.DISPUTED: ("Disputed", "danger"),
}


def _response_status(entry: object) -> Optional[str]:
    # Snapshots arrive either as models or as raw documents.
    status = entry.get("status") if isinstance(entry, Mapping) else getattr(entry, "status", None)
    if isinstance(status, Enum):
        return str(status.value)
    return status if isinstance(status, str) else None


def derive_status(request: "ServiceRequest") -> DisplayStatus:
    """Return the status a customer should see for ``request`` right now.

    Cancelled, paid and completed requests report their stored status as-is.
    Otherwise one acceptance from any eligible provider wins, and the request
    only reads as rejected once every eligible provider has declined.
    Responses from providers outside ``available_providers`` are ignored.
    """
    base = RequestStatus(request.status)
    if base in TERMINAL_FOR_DISPLAY:
        return DisplayStatus(base.value)

    responses = request.provider_responses or {}
    if not responses:
        return DisplayStatus.PENDING

    available = list(request.available_providers or [])
    eligible = set(available)
    statuses = [_response_status(entry) for provider_id, entry in responses.items() if provider_id in eligible]

    if any(status == ResponseStatus.ACCEPTED.value for status in statuses):
        return DisplayStatus.ACCEPTED

    # Counted against the full list, duplicates included.
    rejected = sum(1 for status in statuses if status == ResponseStatus.REJECTED.value)
    if available and rejected == len(available):
        return DisplayStatus.REJECTED
    return DisplayStatus.PENDING


def describe_status(status: str) -> StatusDisplay:
    display_status = DisplayStatus(status)
    label, category = _DISPLAY_TABLE[display_status]
    return StatusDisplay(status=display_status, label=label, category=category)


_HISTORY_EVENTS = {
    RequestStatus.IN_PROGRESS: ("Service Started", "Provider has started the service"),
    RequestStatus.COMPLETED: ("Service Completed", "Service has been completed successfully"),
    RequestStatus.PAID: ("Payment Received", "Payment for this service was received"),
    RequestStatus.CANCELLED: ("Service Cancelled", "Service request was cancelled"),
    RequestStatus.REFUNDED: ("Payment Refunded", "Payment was refunded to the customer"),
    RequestStatus.DISPUTED: ("Dispute Raised", "A dispute was raised on this request"),
}


def _parse_ts(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_timeline(
    request: "ServiceRequest",
    history: Iterable["StatusHistoryEntry"] = (),
) -> List["TimelineEvent"]:
    from localserve.models import TimelineEvent

    if request.delivery_date and request.delivery_time:
        placed = f"Service requested for {request.delivery_date} at {request.delivery_time}"
    else:
        placed = "Service requested"
    events = [
        TimelineEvent(
            status="created",
            title="Order Placed",
            description=placed,
            category="info",
            occurred_at=request.created_at,
        )
    ]

    for provider_id, response in request.provider_responses.items():
        if response.status != ResponseStatus.ACCEPTED:
            continue
        provider_label = request.provider_name if request.provider_id == provider_id and request.provider_name else "Provider"
        events.append(
            TimelineEvent(
                status="accepted",
                title="Provider Accepted",
                description=f"Service accepted by {provider_label}",
                category="success",
                occurred_at=response.updated_at,
            )
        )

    for entry in history:
        try:
            to_status = RequestStatus(entry.to_status)
        except ValueError:
            continue
        if to_status not in _HISTORY_EVENTS:
            continue
        title, description = _HISTORY_EVENTS[to_status]
        events.append(
            TimelineEvent(
                status=to_status.value,
                title=title,
                description=entry.note or description,
                category=describe_status(to_status.value).category,
                occurred_at=entry.created_at,
            )
        )

    return sorted(events, key=lambda event: _parse_ts(event.occurred_at))
