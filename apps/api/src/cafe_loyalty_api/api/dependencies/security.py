from fastapi import Header, HTTPException, status

from cafe_loyalty_api.core.settings import settings


async def require_staff_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Gate terminal/back-office endpoints when a staff key is configured."""

    if not settings.staff_api_key:
        return

    if x_api_key != settings.staff_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
