import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from domain_watch.core.auth import Principal
from domain_watch.core.config import Settings, get_settings


async def get_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"request requires {settings.api_key_header}",
        )

    key_hash = hash_api_key(x_api_key)
    matched = next(
        (stored for stored in settings.api_keys if hmac.compare_digest(stored.lower(), key_hash)),
        None,
    )
    if matched is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")

    return Principal(key_fingerprint=key_hash[:12], scopes=set(settings.api_keys[matched]))


def require_scope(principal: Principal, scope: str) -> None:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()
