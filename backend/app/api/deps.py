from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.security import resolve_user_id
from app.services.google_play import GooglePlayClient

bearer = HTTPBearer(auto_error=False)

_provider: GooglePlayClient | None = None


def get_bearer_token(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> str | None:
    if creds is None:
        return None
    return creds.credentials


def get_current_user_id(token: str | None = Depends(get_bearer_token)) -> str:
    user_id = resolve_user_id(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def get_provider() -> GooglePlayClient:
    # One client per process so the access token cache is shared.
    global _provider
    if _provider is None:
        _provider = GooglePlayClient()
    return _provider
