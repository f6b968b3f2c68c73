"""
auditor/features/entitlements/store.py

Entitlement store: the single authoritative record per user.

Handles:
- Lazy record creation (insert-or-ignore, race safe)
- Merge upserts of provided fields only
- Customer / subscription / email lookups
- Per-user sync leases with TTL
- Snapshot projection and admin audit rows

Connectivity failures surface as StoreUnavailableError, never as "free".
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import select, insert, update, delete, and_, or_
from sqlalchemy.exc import OperationalError, InterfaceError
from sqlalchemy.orm import Session

from auditor.core.database import (
    get_db_session,
    user_entitlements,
    entitlement_snapshots,
    sync_leases,
    entitlement_admin_audit,
)
from auditor.core.errors import NotFoundError, StoreUnavailableError, ValidationError
from auditor.models.entitlement import EntitlementRecord


logger = logging.getLogger(__name__)

_IMMUTABLE_COLUMNS = {"user_id", "created_at"}
_WRITABLE_COLUMNS = {c.name for c in user_entitlements.columns} - _IMMUTABLE_COLUMNS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def current_period_key(now: Optional[datetime] = None) -> str:
    """YYYY-MM of the UTC calendar month."""
    ts = as_utc(now) or utcnow()
    return ts.strftime("%Y-%m")


@contextmanager
def transaction() -> Iterator[Session]:
    """One database transaction; driver connectivity errors become StoreUnavailableError."""
    try:
        with get_db_session() as session:
            yield session
    except (OperationalError, InterfaceError) as exc:
        logger.error(
            "[store] database unavailable",
            extra={"error_code": "store_unavailable", "error": str(exc.orig)[:200]},
        )
        raise StoreUnavailableError("Entitlement store is unavailable") from exc


@contextmanager
def _scope(session: Optional[Session]) -> Iterator[Session]:
    if session is not None:
        yield session
        return
    with transaction() as own:
        yield own


def dialect_insert(session: Session, table):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert
        return _pg_insert(table)
    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert
    return _sqlite_insert(table)


def _row_to_record(row) -> EntitlementRecord:
    data = dict(row._mapping)
    for key in ("current_period_end", "manual_override_expires_at", "last_event_at", "created_at", "updated_at"):
        data[key] = as_utc(data.get(key))
    data["cancel_at_period_end"] = bool(data.get("cancel_at_period_end"))
    return EntitlementRecord(**data)


def _select_by(session: Session, column, value) -> Optional[EntitlementRecord]:
    row = session.execute(select(user_entitlements).where(column == value)).first()
    return _row_to_record(row) if row else None


def ensure_record(session: Session, user_id: str, email: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    """Insert a free/inactive record if none exists. Returns True when created."""
    ts = as_utc(now) or utcnow()
    stmt = dialect_insert(session, user_entitlements).values(
        user_id=user_id,
        email=_normalize_email(email),
        plan="free",
        status="inactive",
        audits_used=0,
        period_key=current_period_key(ts),
        cancel_at_period_end=False,
        created_at=ts,
        updated_at=ts,
    ).on_conflict_do_nothing(index_elements=["user_id"])
    created = session.execute(stmt).rowcount == 1
    if created:
        logger.info("[store] entitlement record created", extra={"user_id": user_id})
    return created


def get(user_id: str, session: Optional[Session] = None) -> EntitlementRecord:
    with _scope(session) as s:
        record = _select_by(s, user_entitlements.c.user_id, user_id)
    if record is None:
        raise NotFoundError(f"No entitlement record for user {user_id}")
    return record


def get_or_create(user_id: str, email: Optional[str] = None, session: Optional[Session] = None) -> EntitlementRecord:
    with _scope(session) as s:
        record = _select_by(s, user_entitlements.c.user_id, user_id)
        if record is not None:
            return record
        ensure_record(s, user_id, email=email)
        record = _select_by(s, user_entitlements.c.user_id, user_id)
    return record


def _normalize_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else None


def upsert(user_id: str, partial: Dict[str, Any], session: Optional[Session] = None, now: Optional[datetime] = None) -> EntitlementRecord:
    """Merge `partial` into the user's record, creating it first if missing.

    Only provided keys change. Unknown or immutable keys raise ValidationError.
    """
    unknown = set(partial) - _WRITABLE_COLUMNS
    if unknown:
        raise ValidationError(f"Unknown entitlement fields: {', '.join(sorted(unknown))}")

    ts = as_utc(now) or utcnow()
    values = {key: _normalize_value(value) for key, value in partial.items()}
    if "email" in values:
        values["email"] = _normalize_email(values["email"])
    values.setdefault("updated_at", ts)

    with _scope(session) as s:
        ensure_record(s, user_id, email=values.get("email"), now=ts)
        s.execute(
            update(user_entitlements)
            .where(user_entitlements.c.user_id == user_id)
            .values(**values)
        )
        record = _select_by(s, user_entitlements.c.user_id, user_id)
    return record


def query_by_customer_id(customer_id: str, session: Optional[Session] = None) -> EntitlementRecord:
    if not customer_id:
        raise NotFoundError("customer id is empty")
    with _scope(session) as s:
        record = _select_by(s, user_entitlements.c.stripe_customer_id, customer_id)
    if record is None:
        raise NotFoundError(f"No entitlement record for customer {customer_id}")
    return record


def query_by_subscription_id(subscription_id: str, session: Optional[Session] = None) -> EntitlementRecord:
    if not subscription_id:
        raise NotFoundError("subscription id is empty")
    with _scope(session) as s:
        record = _select_by(s, user_entitlements.c.stripe_subscription_id, subscription_id)
    if record is None:
        raise NotFoundError(f"No entitlement record for subscription {subscription_id}")
    return record


def find_by_email(email: str, session: Optional[Session] = None) -> Optional[EntitlementRecord]:
    """Migration lookup only. Email is never a key for entitlement decisions."""
    if not email:
        return None
    with _scope(session) as s:
        row = s.execute(
            select(user_entitlements)
            .where(user_entitlements.c.email == email.strip().lower())
            .order_by(user_entitlements.c.created_at.asc())
        ).first()
    return _row_to_record(row) if row else None


def list_stale_active(now: Optional[datetime] = None, limit: int = 100, session: Optional[Session] = None) -> List[EntitlementRecord]:
    """Active records whose paid period has already ended (candidates for reconcile)."""
    ts = as_utc(now) or utcnow()
    with _scope(session) as s:
        rows = s.execute(
            select(user_entitlements)
            .where(user_entitlements.c.status == "active")
            .where(user_entitlements.c.current_period_end.is_not(None))
            .where(user_entitlements.c.current_period_end < ts)
            .where(user_entitlements.c.stripe_subscription_id.is_not(None))
            .order_by(user_entitlements.c.current_period_end.asc())
            .limit(limit)
        ).fetchall()
    return [_row_to_record(r) for r in rows]


# ----------------------------------------------------------------------------
# Leases
# ----------------------------------------------------------------------------

def acquire_lease(key: str, owner: str, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
    """Take the lease if free or expired. Returns False while someone else holds it."""
    ts = as_utc(now) or utcnow()
    expires_at = ts + timedelta(seconds=ttl_seconds)
    with transaction() as session:
        taken_over = session.execute(
            update(sync_leases)
            .where(sync_leases.c.lease_key == key)
            .where(sync_leases.c.expires_at <= ts)
            .values(owner=owner, expires_at=expires_at)
        ).rowcount
        if taken_over == 1:
            return True
        inserted = session.execute(
            dialect_insert(session, sync_leases)
            .values(lease_key=key, owner=owner, expires_at=expires_at)
            .on_conflict_do_nothing(index_elements=["lease_key"])
        ).rowcount
    acquired = inserted == 1
    if not acquired:
        logger.info("[store] lease busy", extra={"lease_key": key})
    return acquired


def release_lease(key: str, owner: str) -> None:
    with transaction() as session:
        session.execute(
            delete(sync_leases)
            .where(and_(sync_leases.c.lease_key == key, sync_leases.c.owner == owner))
        )


# ----------------------------------------------------------------------------
# Projection and audit
# ----------------------------------------------------------------------------

def write_snapshot(
    session: Session,
    user_id: str,
    *,
    plan: str,
    status: str,
    is_pro: bool,
    current_period_end: Optional[datetime],
    pro_until: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> None:
    """Mirror resolved state into entitlement_snapshots (caller's transaction).

    pro_until is the instant is_pro stops holding without any further write
    (period end or override expiry); readers compare it against their clock.
    """
    ts = as_utc(now) or utcnow()
    values = {
        "plan": _normalize_value(plan),
        "status": _normalize_value(status),
        "is_pro": bool(is_pro),
        "current_period_end": current_period_end,
        "pro_until": as_utc(pro_until),
        "updated_at": ts,
    }
    stmt = dialect_insert(session, entitlement_snapshots).values(user_id=user_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
    session.execute(stmt)


def list_snapshots(
    is_pro: Optional[bool] = None,
    limit: int = 100,
    offset: int = 0,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Projection rows with is_pro evaluated at `now` (lapsed periods and overrides drop out)."""
    ts = as_utc(now) or utcnow()
    snap = entitlement_snapshots.c
    still_pro = and_(snap.is_pro == True, or_(snap.pro_until.is_(None), snap.pro_until > ts))  # noqa: E712
    with transaction() as session:
        query = select(entitlement_snapshots)
        if is_pro is True:
            query = query.where(still_pro)
        elif is_pro is False:
            query = query.where(~still_pro)
        rows = session.execute(
            query.order_by(entitlement_snapshots.c.updated_at.desc()).limit(limit).offset(offset)
        ).fetchall()
    return [
        {
            "user_id": r.user_id,
            "plan": r.plan,
            "status": r.status,
            "is_pro": bool(r.is_pro) and (r.pro_until is None or as_utc(r.pro_until) > ts),
            "current_period_end": as_utc(r.current_period_end),
            "pro_until": as_utc(r.pro_until),
            "updated_at": as_utc(r.updated_at),
        }
        for r in rows
    ]


def record_admin_audit(
    session: Session,
    *,
    actor: str,
    action: str,
    target_user_id: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
    actor_type: Optional[str] = None,
) -> None:
    session.execute(
        insert(entitlement_admin_audit).values(
            actor=actor,
            actor_type=actor_type,
            action=action,
            target_user_id=target_user_id,
            payload_json=json.dumps(payload or {}, default=str, sort_keys=True),
            created_at=utcnow(),
        )
    )


def list_admin_audit(target_user_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    with transaction() as session:
        query = select(entitlement_admin_audit)
        if target_user_id:
            query = query.where(entitlement_admin_audit.c.target_user_id == target_user_id)
        rows = session.execute(query.order_by(entitlement_admin_audit.c.id.desc()).limit(limit)).fetchall()
    return [
        {
            "id": r.id,
            "actor": r.actor,
            "actor_type": r.actor_type,
            "action": r.action,
            "target_user_id": r.target_user_id,
            "payload": json.loads(r.payload_json) if r.payload_json else {},
            "created_at": as_utc(r.created_at),
        }
        for r in rows
    ]
