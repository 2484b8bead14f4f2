from __future__ import annotations

from datetime import datetime
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.core.security import as_utc, now_utc
from app.models.entitlement import PURCHASE_STATES, Subscription

subscriptions = Subscription.__table__

# Never rewritten once the row exists.
_IMMUTABLE_COLUMNS = {"id", "user_id", "purchase_token", "created_at"}
_DATETIME_COLUMNS = ("purchase_time", "expiry_time", "acknowledged_at", "created_at", "updated_at")
_WRITABLE_COLUMNS = {c.name for c in subscriptions.columns} - {"id", "created_at", "updated_at"}


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert is not supported on dialect {dialect}")


def _row_out(row) -> dict | None:
    if row is None:
        return None
    out = dict(row)
    out["id"] = str(out["id"])
    for key in _DATETIME_COLUMNS:
        out[key] = as_utc(out.get(key))
    return out


def _check_values(values: dict) -> None:
    unknown = set(values) - _WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown columns: {sorted(unknown)}")
    state = values.get("purchase_state")
    if state is not None and state not in PURCHASE_STATES:
        raise ValueError(f"invalid purchase_state: {state}")


def upsert_entitlement(db: Session, values: dict, *, owner_guard: bool = True) -> dict | None:
    """Insert or merge the row keyed by ``values["purchase_token"]``.

    Only the keys present in ``values`` are touched on conflict, so callers
    can pass partial rows. ``acknowledged_at`` keeps its first value.

    With ``owner_guard`` the merge only happens when the stored ``user_id``
    equals ``values["user_id"]``; a token owned by someone else is left
    untouched and ``None`` is returned. The existence check and the write are
    a single statement, so two first-time verifications of the same token
    cannot both win.
    """
    if not values.get("purchase_token"):
        raise ValueError("purchase_token is required")
    _check_values(values)
    now = now_utc()

    insert = _insert_for(db)
    stmt = insert(subscriptions).values(id=uuid4(), created_at=now, updated_at=now, **values)

    set_: dict[str, object] = {
        key: stmt.excluded[key] for key in values if key not in _IMMUTABLE_COLUMNS
    }
    if "acknowledged_at" in set_:
        set_["acknowledged_at"] = sa.func.coalesce(subscriptions.c.acknowledged_at, stmt.excluded.acknowledged_at)
    set_["updated_at"] = stmt.excluded.updated_at

    where = None
    if owner_guard and values.get("user_id") is not None:
        where = subscriptions.c.user_id == stmt.excluded.user_id

    stmt = stmt.on_conflict_do_update(
        index_elements=[subscriptions.c.purchase_token],
        set_=set_,
        where=where,
    ).returning(*subscriptions.c)
    row = db.execute(stmt).mappings().first()
    return _row_out(row)


def update_by_token(db: Session, purchase_token: str, changes: dict) -> bool:
    """Partial update of an existing row. Never creates one."""
    _check_values(changes)
    fields = {k: v for k, v in changes.items() if k not in _IMMUTABLE_COLUMNS}
    fields["updated_at"] = now_utc()
    result = db.execute(
        sa.update(subscriptions)
        .where(subscriptions.c.purchase_token == purchase_token)
        .values(**fields)
    )
    return bool(result.rowcount)


def find_by_token(db: Session, purchase_token: str) -> dict | None:
    row = db.execute(
        sa.select(subscriptions).where(subscriptions.c.purchase_token == purchase_token)
    ).mappings().first()
    return _row_out(row)


def find_active_for_user(db: Session, user_id: str, *, now: datetime | None = None) -> dict | None:
    at = now or now_utc()
    row = db.execute(
        sa.select(subscriptions)
        .where(
            subscriptions.c.user_id == user_id,
            subscriptions.c.is_active.is_(True),
            subscriptions.c.expiry_time > at,
        )
        .order_by(subscriptions.c.expiry_time.desc())
        .limit(1)
    ).mappings().first()
    return _row_out(row)


def list_stale_active(db: Session, *, now: datetime | None = None, limit: int = 200) -> list[dict]:
    at = now or now_utc()
    rows = db.execute(
        sa.select(subscriptions)
        .where(subscriptions.c.is_active.is_(True), subscriptions.c.expiry_time <= at)
        .order_by(subscriptions.c.updated_at.asc(), subscriptions.c.id.asc())
        .limit(limit)
    ).mappings().all()
    return [_row_out(r) for r in rows]


def is_premium(row: dict | None, *, now: datetime | None = None) -> bool:
    if not row or not row.get("is_active"):
        return False
    expiry = as_utc(row.get("expiry_time"))
    return expiry is not None and expiry > (now or now_utc())


def entitlement_projection(db: Session, user_id: str, *, now: datetime | None = None) -> dict:
    at = now or now_utc()
    row = find_active_for_user(db, user_id, now=at)
    active = is_premium(row, now=at)
    return {
        "has_active_subscription": active,
        "expiry_date": row["expiry_time"] if active else None,
        "subscription": row if active else None,
    }
