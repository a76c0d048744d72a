import json
import logging
import os
import re
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from localserve.models import (
    AnalyticsSummary,
    ApplicationReviewResult,
    DailyRevenue,
    PaymentRecord,
    ProviderApplication,
    ProviderProfile,
    ProviderResponse,
    RequestItem,
    ServicePincode,
    ServiceRequest,
    StatusHistoryEntry,
)
from localserve.services.request_feed import RequestFeed, request_feed
from localserve.services.request_status import DisplayStatus, RequestStatus, ResponseStatus, derive_status

logger = logging.getLogger(__name__)

PINCODE_PATTERN = re.compile(r"^[1-9][0-9]{5}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CUSTOMER = "customer"
PROVIDER = "provider"
ADMIN = "admin"

# Keyed on the workflow status; values map each reachable status to the roles allowed to set it.
STATUS_TRANSITIONS: Dict[str, Dict[str, Set[str]]] = {
    "pending": {"cancelled": {CUSTOMER}},
    "rejected": {"cancelled": {CUSTOMER}},
    "accepted": {"in_progress": {PROVIDER}, "completed": {PROVIDER}, "cancelled": {CUSTOMER}},
    "in_progress": {"completed": {PROVIDER}, "disputed": {CUSTOMER, ADMIN}},
    "completed": {"disputed": {CUSTOMER, ADMIN}},
    "paid": {"refunded": {ADMIN}, "disputed": {CUSTOMER, ADMIN}},
    "disputed": {"refunded": {ADMIN}, "completed": {ADMIN}},
}

CLOSED_STATUSES = {"cancelled", "refunded"}
PAYABLE_STATUSES = {"accepted", "completed"}

DEFAULT_ADMIN_USERS = {"admin_1"}


class StoreError(ValueError):
    """Base class for user-visible marketplace-store errors."""


class StoreValidationError(StoreError):
    pass


class StoreNotFoundError(StoreError):
    pass


class StoreConflictError(StoreError):
    pass


class StorePermissionError(StoreError):
    pass


def workflow_status(request: ServiceRequest) -> str:
    """Status the write path reasons about.

    A stored ``pending`` still has its provider responses to consult; any other
    stored status was set deliberately and is taken as-is.
    """
    if request.status == RequestStatus.PENDING:
        return derive_status(request).value
    return request.status.value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return default
    return value if isinstance(value, type(default)) else default


@dataclass
class MarketplaceStore:
    db_path: str
    feed: RequestFeed = field(default=request_feed)

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        configured_admins = {value.strip() for value in os.getenv("ADMIN_USER_IDS", "").split(",") if value.strip()}
        self._admin_user_ids: Set[str] = configured_admins or set(DEFAULT_ADMIN_USERS)
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL DEFAULT '',
                        email TEXT NOT NULL DEFAULT '',
                        role TEXT NOT NULL DEFAULT 'user',
                        application_status TEXT,
                        can_reapply INTEGER NOT NULL DEFAULT 1,
                        provider_since TEXT,
                        rejection_date TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        id TEXT PRIMARY KEY,
                        owner_user_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        service_types_json TEXT NOT NULL,
                        service_pincodes_json TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'active',
                        provider_since TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_applications (
                        user_id TEXT PRIMARY KEY,
                        user_name TEXT NOT NULL,
                        email TEXT NOT NULL,
                        phone TEXT NOT NULL,
                        business_name TEXT NOT NULL,
                        experience TEXT NOT NULL,
                        services_json TEXT NOT NULL,
                        service_pincodes_json TEXT NOT NULL,
                        status TEXT NOT NULL,
                        application_date TEXT NOT NULL,
                        review_date TEXT,
                        reviewed_by TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        customer_user_id TEXT NOT NULL,
                        customer_name TEXT NOT NULL,
                        customer_email TEXT NOT NULL,
                        customer_address TEXT NOT NULL,
                        customer_pincode TEXT NOT NULL,
                        customer_city TEXT NOT NULL,
                        items_json TEXT NOT NULL,
                        total_amount REAL NOT NULL,
                        status TEXT NOT NULL,
                        available_providers_json TEXT NOT NULL,
                        provider_id TEXT,
                        provider_name TEXT,
                        delivery_date TEXT,
                        delivery_time TEXT,
                        remarks TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS request_provider_responses (
                        request_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (request_id, provider_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS request_status_history (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS payments (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        gateway_order_id TEXT NOT NULL UNIQUE,
                        gateway_payment_id TEXT,
                        amount REAL NOT NULL,
                        currency TEXT NOT NULL DEFAULT 'INR',
                        status TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                self._ensure_column(conn, "service_requests", "remarks", "TEXT NOT NULL DEFAULT ''")
                self._ensure_column(conn, "users", "rejection_date", "TEXT")
                conn.commit()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _seed_if_needed(self) -> None:
        seed_providers = [
            {
                "id": "prv_1",
                "owner_user_id": "user_1",
                "name": "Green Valley Dairy",
                "service_types": ["dairy", "fruits"],
                "service_pincodes": ["110001", "110002"],
            },
            {
                "id": "prv_2",
                "owner_user_id": "user_2",
                "name": "Morning Fresh Milk",
                "service_types": ["dairy"],
                "service_pincodes": ["110001"],
            },
            {
                "id": "prv_3",
                "owner_user_id": "user_3",
                "name": "Banana Express",
                "service_types": ["fruits"],
                "service_pincodes": ["110001", "110003"],
            },
        ]
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute("SELECT COUNT(*) AS count FROM providers").fetchone()["count"]
                if existing:
                    return
                now_iso = _now_iso()
                for admin_id in sorted(self._admin_user_ids):
                    self._ensure_user_row(conn, admin_id, display_name="Administrator")
                for provider in seed_providers:
                    self._ensure_user_row(conn, provider["owner_user_id"], display_name=provider["name"])
                    conn.execute(
                        "UPDATE users SET role = 'provider', application_status = 'approved', provider_since = ? WHERE id = ?",
                        (now_iso, provider["owner_user_id"]),
                    )
                    conn.execute(
                        """
                        INSERT INTO providers (
                            id, owner_user_id, name, service_types_json, service_pincodes_json, status, provider_since, created_at
                        ) VALUES (?, ?, ?, ?, ?, 'active', ?, ?)
                        """,
                        (
                            provider["id"],
                            provider["owner_user_id"],
                            provider["name"],
                            json.dumps(provider["service_types"]),
                            json.dumps(provider["service_pincodes"]),
                            now_iso,
                            now_iso,
                        ),
                    )
                conn.commit()

    # Users

    def is_admin(self, user_id: str) -> bool:
        return user_id in self._admin_user_ids

    def _ensure_user_row(self, conn: sqlite3.Connection, user_id: str, display_name: str = "", email: str = "") -> None:
        role = ADMIN if user_id in self._admin_user_ids else "user"
        conn.execute(
            """
            INSERT INTO users (id, display_name, email, role, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                display_name = CASE WHEN excluded.display_name != '' THEN excluded.display_name ELSE users.display_name END,
                email = CASE WHEN excluded.email != '' THEN excluded.email ELSE users.email END
            """,
            (user_id, display_name.strip(), email.strip(), role, _now_iso()),
        )

    def ensure_user(self, user_id: str, display_name: str = "", email: str = "") -> str:
        """Create the user row on first sight and return the user's role."""
        if not user_id.strip():
            raise StoreValidationError("user_id is required")
        with self._lock:
            with self._connect() as conn:
                self._ensure_user_row(conn, user_id, display_name=display_name, email=email)
                conn.commit()
                row = conn.execute("SELECT role FROM users WHERE id = ?", (user_id,)).fetchone()
        return str(row["role"]) if row else "user"

    # Providers

    def _provider_from_row(self, row: sqlite3.Row) -> ProviderProfile:
        return ProviderProfile(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            name=row["name"],
            service_types=_load_json(row["service_types_json"], []),
            service_pincodes=_load_json(row["service_pincodes_json"], []),
            status=row["status"],
            provider_since=row["provider_since"],
        )

    def get_provider(self, provider_id: str) -> ProviderProfile:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Provider not found")
        return self._provider_from_row(row)

    def list_provider_owner_user_ids(self, provider_ids: Iterable[str]) -> List[str]:
        ids = list(provider_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT owner_user_id FROM providers WHERE id IN ({placeholders})",
                    ids,
                ).fetchall()
        return [str(row["owner_user_id"]) for row in rows if row["owner_user_id"]]

    def list_providers_for_user(self, user_id: str) -> List[ProviderProfile]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM providers WHERE owner_user_id = ? ORDER BY created_at ASC",
                    (user_id,),
                ).fetchall()
        return [self._provider_from_row(row) for row in rows]

    def _match_providers(
        self,
        conn: sqlite3.Connection,
        pincode: str,
        service_types: Set[str],
        exclude_owner: str,
    ) -> List[str]:
        rows = conn.execute(
            """
            SELECT *
            FROM providers
            WHERE status = 'active'
              AND owner_user_id != ?
            ORDER BY created_at ASC, id ASC
            """,
            (exclude_owner,),
        ).fetchall()
        matched: List[str] = []
        for row in rows:
            pincodes = {str(value) for value in _load_json(row["service_pincodes_json"], [])}
            offered = {str(value).lower() for value in _load_json(row["service_types_json"], [])}
            if pincode in pincodes and offered & service_types:
                matched.append(str(row["id"]))
        return matched

    # Service requests

    def _request_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ServiceRequest:
        response_rows = conn.execute(
            "SELECT provider_id, status, updated_at FROM request_provider_responses WHERE request_id = ?",
            (row["id"],),
        ).fetchall()
        return ServiceRequest(
            id=row["id"],
            customer_user_id=row["customer_user_id"],
            customer_name=row["customer_name"],
            customer_email=row["customer_email"],
            customer_address=row["customer_address"],
            customer_pincode=row["customer_pincode"],
            customer_city=row["customer_city"],
            items=[RequestItem(**item) for item in _load_json(row["items_json"], [])],
            total_amount=row["total_amount"],
            status=row["status"],
            available_providers=_load_json(row["available_providers_json"], []),
            provider_responses={
                str(resp["provider_id"]): ProviderResponse(status=resp["status"], updated_at=resp["updated_at"])
                for resp in response_rows
            },
            provider_id=row["provider_id"],
            provider_name=row["provider_name"],
            delivery_date=row["delivery_date"],
            delivery_time=row["delivery_time"],
            remarks=row["remarks"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load_request(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Service request not found")
        return self._request_from_row(conn, row)

    def _record_history(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
        created_at: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO request_status_history (id, request_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"rsh_{uuid4().hex[:10]}", request_id, actor_user_id, from_status, to_status, note, created_at),
        )

    def create_request(
        self,
        *,
        user_id: str,
        customer_name: str,
        customer_email: str,
        customer_pincode: str,
        items: Iterable[RequestItem],
        customer_address: str = "",
        customer_city: str = "",
        delivery_date: Optional[str] = None,
        delivery_time: Optional[str] = None,
        remarks: str = "",
    ) -> ServiceRequest:
        cleaned_name = customer_name.strip()
        cleaned_email = customer_email.strip()
        cleaned_pincode = customer_pincode.strip()
        item_list = list(items)
        if not user_id.strip():
            raise StoreValidationError("user_id is required")
        if not cleaned_name:
            raise StoreValidationError("Customer name is required")
        if not EMAIL_PATTERN.match(cleaned_email):
            raise StoreValidationError("A valid customer email is required")
        if not PINCODE_PATTERN.match(cleaned_pincode):
            raise StoreValidationError("Pincode must be a 6 digit postal code")
        if not item_list:
            raise StoreValidationError("At least one service item is required")
        if any(not item.name.strip() or not item.service_type.strip() for item in item_list):
            raise StoreValidationError("Every item needs a name and service type")

        service_types = {item.service_type.strip().lower() for item in item_list}
        total_amount = round(sum(item.price * item.quantity for item in item_list), 2)
        request_id = f"sr_{uuid4().hex[:10]}"
        now_iso = _now_iso()

        with self._lock:
            with self._connect() as conn:
                self._ensure_user_row(conn, user_id, display_name=cleaned_name, email=cleaned_email)
                available = self._match_providers(conn, cleaned_pincode, service_types, exclude_owner=user_id)
                conn.execute(
                    """
                    INSERT INTO service_requests (
                        id, customer_user_id, customer_name, customer_email, customer_address, customer_pincode,
                        customer_city, items_json, total_amount, status, available_providers_json, provider_id,
                        provider_name, delivery_date, delivery_time, remarks, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, NULL, NULL, ?, ?, ?, ?, ?)
                    """,
                    (
                        request_id,
                        user_id,
                        cleaned_name,
                        cleaned_email,
                        customer_address.strip(),
                        cleaned_pincode,
                        customer_city.strip(),
                        json.dumps([item.model_dump() for item in item_list]),
                        total_amount,
                        json.dumps(available),
                        delivery_date,
                        delivery_time,
                        remarks.strip(),
                        now_iso,
                        now_iso,
                    ),
                )
                self._record_history(conn, request_id, user_id, "", "pending", "Service requested", now_iso)
                conn.commit()
                snapshot = self._load_request(conn, request_id)

        logger.info("Service request %s created with %d eligible providers", request_id, len(available))
        self.feed.publish(snapshot)
        return snapshot

    def respond_to_request(
        self,
        *,
        request_id: str,
        provider_id: str,
        actor_user_id: str,
        decision: str,
    ) -> ServiceRequest:
        if decision not in {ResponseStatus.ACCEPTED.value, ResponseStatus.REJECTED.value}:
            raise StoreValidationError("Invalid decision. Allowed: accepted, rejected")

        with self._lock:
            with self._connect() as conn:
                request = self._load_request(conn, request_id)
                if provider_id not in request.available_providers:
                    raise StoreNotFoundError("Provider is not eligible for this request")

                provider_row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
                if not provider_row or str(provider_row["owner_user_id"]) != actor_user_id:
                    raise StorePermissionError("Only the provider owner can respond to this request")

                existing = request.provider_responses.get(provider_id)
                if existing and existing.status != ResponseStatus.PENDING:
                    raise StoreConflictError("Provider already responded to this request")
                if workflow_status(request) != DisplayStatus.PENDING.value:
                    raise StoreConflictError("Request is no longer open for responses")

                now_iso = _now_iso()
                conn.execute(
                    """
                    INSERT INTO request_provider_responses (request_id, provider_id, status, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(request_id, provider_id) DO UPDATE SET status = excluded.status, updated_at = excluded.updated_at
                    """,
                    (request_id, provider_id, decision, now_iso),
                )
                if decision == ResponseStatus.ACCEPTED.value:
                    conn.execute(
                        "UPDATE service_requests SET provider_id = ?, provider_name = ?, updated_at = ? WHERE id = ?",
                        (provider_id, provider_row["name"], now_iso, request_id),
                    )
                else:
                    conn.execute("UPDATE service_requests SET updated_at = ? WHERE id = ?", (now_iso, request_id))
                conn.commit()
                snapshot = self._load_request(conn, request_id)

        logger.info("Provider %s %s service request %s", provider_id, decision, request_id)
        self.feed.publish(snapshot)
        return snapshot

    def _actor_roles(
        self,
        conn: sqlite3.Connection,
        request: ServiceRequest,
        actor_user_id: str,
        is_admin: bool,
    ) -> Set[str]:
        roles: Set[str] = set()
        if actor_user_id == request.customer_user_id:
            roles.add(CUSTOMER)
        if request.provider_id:
            owner = conn.execute(
                "SELECT owner_user_id FROM providers WHERE id = ?",
                (request.provider_id,),
            ).fetchone()
            if owner and str(owner["owner_user_id"]) == actor_user_id:
                roles.add(PROVIDER)
        if is_admin:
            roles.add(ADMIN)
        return roles

    def update_request_status(
        self,
        *,
        request_id: str,
        actor_user_id: str,
        status: str,
        note: str = "",
        is_admin: bool = False,
    ) -> ServiceRequest:
        try:
            next_status = RequestStatus(status)
        except ValueError as exc:
            raise StoreValidationError(f"Unknown status: {status}") from exc
        if next_status == RequestStatus.PAID:
            raise StoreValidationError("Requests are marked paid through payment verification")

        with self._lock:
            with self._connect() as conn:
                request = self._load_request(conn, request_id)
                current = workflow_status(request)
                if current in CLOSED_STATUSES:
                    raise StoreConflictError("Service request is already closed")

                allowed = STATUS_TRANSITIONS.get(current, {})
                if next_status.value not in allowed:
                    raise StoreValidationError(f"Invalid status transition: {current} -> {next_status.value}")
                if not self._actor_roles(conn, request, actor_user_id, is_admin) & allowed[next_status.value]:
                    raise StorePermissionError(f"Not allowed to mark this request {next_status.value}")

                now_iso = _now_iso()
                conn.execute(
                    "UPDATE service_requests SET status = ?, updated_at = ? WHERE id = ?",
                    (next_status.value, now_iso, request_id),
                )
                self._record_history(conn, request_id, actor_user_id, current, next_status.value, note.strip(), now_iso)
                conn.commit()
                snapshot = self._load_request(conn, request_id)

        logger.info("Service request %s moved %s -> %s by %s", request_id, current, next_status.value, actor_user_id)
        self.feed.publish(snapshot)
        return snapshot

    def get_request(self, request_id: str) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                return self._load_request(conn, request_id)

    def get_request_history(self, request_id: str) -> List[StatusHistoryEntry]:
        with self._lock:
            with self._connect() as conn:
                self._load_request(conn, request_id)
                rows = conn.execute(
                    "SELECT * FROM request_status_history WHERE request_id = ? ORDER BY created_at ASC",
                    (request_id,),
                ).fetchall()
        return [
            StatusHistoryEntry(
                id=row["id"],
                request_id=row["request_id"],
                actor_user_id=row["actor_user_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def list_requests_for_customer(self, user_id: str) -> List[ServiceRequest]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM service_requests WHERE customer_user_id = ? ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()
                return [self._request_from_row(conn, row) for row in rows]

    def list_requests_for_provider(self, provider_id: str) -> List[ServiceRequest]:
        """Open requests still waiting on ``provider_id`` plus the ones it won."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM service_requests
                    WHERE status = 'pending' OR provider_id = ?
                    ORDER BY created_at DESC
                    """,
                    (provider_id,),
                ).fetchall()
                requests = [self._request_from_row(conn, row) for row in rows]

        inbox: List[ServiceRequest] = []
        for request in requests:
            if request.provider_id == provider_id:
                inbox.append(request)
                continue
            if provider_id not in request.available_providers:
                continue
            if workflow_status(request) != DisplayStatus.PENDING.value:
                continue
            response = request.provider_responses.get(provider_id)
            if response is None or response.status == ResponseStatus.PENDING:
                inbox.append(request)
        return inbox

    def list_requests(self, status: Optional[str] = None) -> List[ServiceRequest]:
        if status is not None:
            try:
                DisplayStatus(status)
            except ValueError as exc:
                raise StoreValidationError(f"Unknown status filter: {status}") from exc
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM service_requests ORDER BY created_at DESC").fetchall()
                requests = [self._request_from_row(conn, row) for row in rows]
        if status is None:
            return requests
        return [request for request in requests if derive_status(request).value == status]

    # Provider applications

    def _application_from_row(self, row: sqlite3.Row) -> ProviderApplication:
        return ProviderApplication(
            user_id=row["user_id"],
            user_name=row["user_name"],
            email=row["email"],
            phone=row["phone"],
            business_name=row["business_name"],
            experience=row["experience"],
            services=_load_json(row["services_json"], []),
            service_pincodes=[ServicePincode(**item) for item in _load_json(row["service_pincodes_json"], [])],
            status=row["status"],
            application_date=row["application_date"],
            review_date=row["review_date"],
            reviewed_by=row["reviewed_by"],
        )

    def submit_application(
        self,
        *,
        user_id: str,
        user_name: str,
        email: str,
        services: Iterable[str],
        service_pincodes: Iterable[ServicePincode],
        phone: str = "",
        business_name: str = "",
        experience: str = "",
    ) -> ProviderApplication:
        cleaned_services = sorted({value.strip().lower() for value in services if value.strip()})
        pincodes = list(service_pincodes)
        if not user_name.strip():
            raise StoreValidationError("Applicant name is required")
        if not EMAIL_PATTERN.match(email.strip()):
            raise StoreValidationError("A valid email is required")
        if not cleaned_services:
            raise StoreValidationError("At least one service is required")
        if not pincodes:
            raise StoreValidationError("At least one service pincode is required")
        for item in pincodes:
            if not PINCODE_PATTERN.match(item.pincode.strip()):
                raise StoreValidationError(f"Invalid service pincode: {item.pincode}")

        now_iso = _now_iso()
        with self._lock:
            with self._connect() as conn:
                self._ensure_user_row(conn, user_id, display_name=user_name, email=email)
                user_row = conn.execute("SELECT role FROM users WHERE id = ?", (user_id,)).fetchone()
                if user_row and str(user_row["role"]) == PROVIDER:
                    raise StoreConflictError("User is already a provider")
                existing = conn.execute(
                    "SELECT status FROM provider_applications WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
                if existing:
                    raise StoreConflictError("An application is already under review")

                conn.execute(
                    """
                    INSERT INTO provider_applications (
                        user_id, user_name, email, phone, business_name, experience, services_json,
                        service_pincodes_json, status, application_date, review_date, reviewed_by
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, NULL, NULL)
                    """,
                    (
                        user_id,
                        user_name.strip(),
                        email.strip(),
                        phone.strip(),
                        business_name.strip(),
                        experience.strip(),
                        json.dumps(cleaned_services),
                        json.dumps([{"pincode": item.pincode.strip(), "city": item.city.strip()} for item in pincodes]),
                        now_iso,
                    ),
                )
                conn.execute(
                    "UPDATE users SET application_status = 'pending', can_reapply = 0 WHERE id = ?",
                    (user_id,),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM provider_applications WHERE user_id = ?", (user_id,)).fetchone()

        logger.info("Provider application submitted by %s", user_id)
        return self._application_from_row(row)

    def list_applications(self, status: Optional[str] = "pending") -> List[ProviderApplication]:
        with self._lock:
            with self._connect() as conn:
                if status:
                    rows = conn.execute(
                        "SELECT * FROM provider_applications WHERE status = ? ORDER BY application_date ASC",
                        (status,),
                    ).fetchall()
                else:
                    rows = conn.execute("SELECT * FROM provider_applications ORDER BY application_date ASC").fetchall()
        return [self._application_from_row(row) for row in rows]

    def review_application(
        self,
        *,
        user_id: str,
        reviewer_user_id: str,
        decision: str,
    ) -> ApplicationReviewResult:
        """Approve or reject a pending application.

        The application, the applicant's user row and the provider profile
        change together in one transaction. Rejected applications are removed
        so the applicant can apply again.
        """
        if decision not in {"approved", "rejected"}:
            raise StoreValidationError("Invalid decision. Allowed: approved, rejected")

        now_iso = _now_iso()
        provider: Optional[ProviderProfile] = None
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM provider_applications WHERE user_id = ?", (user_id,)).fetchone()
                if not row:
                    raise StoreNotFoundError("Provider application not found")
                application = self._application_from_row(row)
                if application.status != "pending":
                    raise StoreConflictError("Provider application was already reviewed")

                if decision == "approved":
                    provider_id = f"prv_{user_id}"
                    conn.execute(
                        "UPDATE provider_applications SET status = 'approved', review_date = ?, reviewed_by = ? WHERE user_id = ?",
                        (now_iso, reviewer_user_id, user_id),
                    )
                    conn.execute(
                        """
                        UPDATE users
                        SET role = 'provider', provider_since = ?, application_status = 'approved', can_reapply = 0
                        WHERE id = ?
                        """,
                        (now_iso, user_id),
                    )
                    conn.execute(
                        """
                        INSERT INTO providers (
                            id, owner_user_id, name, service_types_json, service_pincodes_json, status, provider_since, created_at
                        ) VALUES (?, ?, ?, ?, ?, 'active', ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            name = excluded.name,
                            service_types_json = excluded.service_types_json,
                            service_pincodes_json = excluded.service_pincodes_json,
                            status = 'active'
                        """,
                        (
                            provider_id,
                            user_id,
                            application.business_name or application.user_name,
                            json.dumps(application.services),
                            json.dumps([item.pincode for item in application.service_pincodes]),
                            now_iso,
                            now_iso,
                        ),
                    )
                else:
                    conn.execute(
                        """
                        UPDATE users
                        SET application_status = 'rejected', can_reapply = 1, rejection_date = ?
                        WHERE id = ?
                        """,
                        (now_iso, user_id),
                    )
                    conn.execute("DELETE FROM provider_applications WHERE user_id = ?", (user_id,))
                conn.commit()
                if decision == "approved":
                    provider_row = conn.execute("SELECT * FROM providers WHERE id = ?", (f"prv_{user_id}",)).fetchone()
                    provider = self._provider_from_row(provider_row)

        logger.info("Provider application for %s %s by %s", user_id, decision, reviewer_user_id)
        return ApplicationReviewResult(user_id=user_id, decision=decision, provider=provider)

    # Payments

    def _payment_from_row(self, row: sqlite3.Row) -> PaymentRecord:
        return PaymentRecord(
            id=row["id"],
            request_id=row["request_id"],
            user_id=row["user_id"],
            gateway_order_id=row["gateway_order_id"],
            gateway_payment_id=row["gateway_payment_id"],
            amount=row["amount"],
            currency=row["currency"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _assert_payable(self, request: ServiceRequest, user_id: str) -> None:
        if request.customer_user_id != user_id:
            raise StorePermissionError("Only the customer can pay for this request")
        if workflow_status(request) not in PAYABLE_STATUSES:
            raise StoreConflictError("Service request is not ready for payment")

    def get_payable_request(self, *, request_id: str, user_id: str) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                request = self._load_request(conn, request_id)
        self._assert_payable(request, user_id)
        return request

    def record_payment_order(
        self,
        *,
        request_id: str,
        user_id: str,
        gateway_order_id: str,
        amount: float,
        currency: str = "INR",
    ) -> PaymentRecord:
        now_iso = _now_iso()
        payment_id = f"pay_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                request = self._load_request(conn, request_id)
                self._assert_payable(request, user_id)
                conn.execute(
                    """
                    INSERT INTO payments (
                        id, request_id, user_id, gateway_order_id, gateway_payment_id, amount, currency, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, NULL, ?, ?, 'created', ?, ?)
                    """,
                    (payment_id, request_id, user_id, gateway_order_id, amount, currency, now_iso, now_iso),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        return self._payment_from_row(row)

    def _load_payment(self, conn: sqlite3.Connection, request_id: str, gateway_order_id: str, user_id: str) -> PaymentRecord:
        row = conn.execute(
            "SELECT * FROM payments WHERE gateway_order_id = ? AND request_id = ?",
            (gateway_order_id, request_id),
        ).fetchone()
        if not row:
            raise StoreNotFoundError("Payment order not found")
        payment = self._payment_from_row(row)
        if payment.user_id != user_id:
            raise StorePermissionError("Payment order belongs to another user")
        if payment.status != "created":
            raise StoreConflictError(f"Payment order is already {payment.status}")
        return payment

    def complete_payment(
        self,
        *,
        request_id: str,
        user_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
    ) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                payment = self._load_payment(conn, request_id, gateway_order_id, user_id)
                request = self._load_request(conn, request_id)
                self._assert_payable(request, user_id)
                current = workflow_status(request)

                now_iso = _now_iso()
                conn.execute(
                    "UPDATE payments SET status = 'completed', gateway_payment_id = ?, updated_at = ? WHERE id = ?",
                    (gateway_payment_id, now_iso, payment.id),
                )
                conn.execute(
                    "UPDATE service_requests SET status = 'paid', updated_at = ? WHERE id = ?",
                    (now_iso, request_id),
                )
                self._record_history(conn, request_id, user_id, current, "paid", f"Payment {gateway_payment_id}", now_iso)
                conn.commit()
                snapshot = self._load_request(conn, request_id)

        logger.info("Payment %s completed for service request %s", gateway_payment_id, request_id)
        self.feed.publish(snapshot)
        return snapshot

    def fail_payment(self, *, request_id: str, user_id: str, gateway_order_id: str) -> PaymentRecord:
        with self._lock:
            with self._connect() as conn:
                payment = self._load_payment(conn, request_id, gateway_order_id, user_id)
                conn.execute(
                    "UPDATE payments SET status = 'failed', updated_at = ? WHERE id = ?",
                    (_now_iso(), payment.id),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment.id,)).fetchone()
        logger.warning("Payment order %s failed verification for request %s", gateway_order_id, request_id)
        return self._payment_from_row(row)

    def list_payments(self, status: Optional[str] = None) -> List[PaymentRecord]:
        with self._lock:
            with self._connect() as conn:
                if status:
                    rows = conn.execute(
                        "SELECT * FROM payments WHERE status = ? ORDER BY created_at DESC",
                        (status,),
                    ).fetchall()
                else:
                    rows = conn.execute("SELECT * FROM payments ORDER BY created_at DESC").fetchall()
        return [self._payment_from_row(row) for row in rows]

    # Analytics

    def analytics_summary(self, days: int = 30, today: Optional[date] = None) -> AnalyticsSummary:
        if days < 1:
            raise StoreValidationError("days must be positive")
        today = today or datetime.now(timezone.utc).date()

        with self._lock:
            with self._connect() as conn:
                role_rows = conn.execute("SELECT role, COUNT(*) AS count FROM users GROUP BY role").fetchall()
                active_providers = conn.execute(
                    "SELECT COUNT(*) AS count FROM providers WHERE status = 'active'"
                ).fetchone()["count"]
                pending_applications = conn.execute(
                    "SELECT COUNT(*) AS count FROM provider_applications WHERE status = 'pending'"
                ).fetchone()["count"]
                request_rows = conn.execute("SELECT * FROM service_requests").fetchall()
                requests = [self._request_from_row(conn, row) for row in request_rows]
                payment_rows = conn.execute(
                    "SELECT amount, updated_at FROM payments WHERE status = 'completed'"
                ).fetchall()

        users_by_role = {str(row["role"]): int(row["count"]) for row in role_rows}
        status_counts = Counter(derive_status(request).value for request in requests)

        window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
        revenue_by_day: Dict[str, float] = {day.isoformat(): 0.0 for day in window}
        requests_by_day: Dict[str, int] = {day.isoformat(): 0 for day in window}
        for row in payment_rows:
            day_key = str(row["updated_at"])[:10]
            if day_key in revenue_by_day:
                revenue_by_day[day_key] += float(row["amount"])
        for request in requests:
            day_key = request.created_at[:10]
            if day_key in requests_by_day:
                requests_by_day[day_key] += 1

        return AnalyticsSummary(
            total_users=sum(users_by_role.values()),
            users_by_role=users_by_role,
            active_providers=int(active_providers),
            pending_applications=int(pending_applications),
            total_requests=len(requests),
            requests_by_status=dict(status_counts),
            paid_requests=status_counts.get(DisplayStatus.PAID.value, 0),
            total_revenue=round(sum(float(row["amount"]) for row in payment_rows), 2),
            daily=[
                DailyRevenue(date=key, revenue=round(revenue_by_day[key], 2), requests=requests_by_day[key])
                for key in revenue_by_day
            ],
        )


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")
marketplace_store = MarketplaceStore(db_path=os.getenv("LOCALSERVE_DB_PATH", default_db))
