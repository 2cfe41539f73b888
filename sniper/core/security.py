import hmac

from fastapi import Depends, Header, HTTPException, status

from sniper.core.config import Settings, get_settings

API_KEY_HEADER = "X-API-Key"


async def require_admin_key(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias=API_KEY_HEADER),
) -> None:
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin API key is not configured",
        )
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"admin endpoints require {API_KEY_HEADER}",
        )
    if not hmac.compare_digest(x_api_key.encode("utf-8"), settings.admin_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid API key")
