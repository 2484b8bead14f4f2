from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.core.config import settings

ALGO = "HS256"

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored instant is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def create_access_token(sub: str, *, minutes: int | None = None) -> str:
    exp = now_utc() + timedelta(minutes=minutes or settings.JWT_ACCESS_MINUTES)
    payload = {"sub": sub, "role": "authenticated", "exp": exp}
    if settings.JWT_AUDIENCE:
        payload["aud"] = settings.JWT_AUDIENCE
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)

def decode_token(token: str) -> dict:
    if settings.JWT_AUDIENCE:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO], audience=settings.JWT_AUDIENCE)
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO], options={"verify_aud": False})

def resolve_user_id(token: str | None) -> str | None:
    if not token:
        return None
    try:
        payload = decode_token(token)
    except JWTError:
        return None
    user_id = str(payload.get("sub") or "").strip()
    return user_id or None
