import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from portal.core.auth import Principal, PrincipalType, parse_bearer_token
from portal.core.config import Settings, get_settings

ROLE_SCOPES: dict[str, set[str]] = {
    "user": {"supplier:write", "ppt:read", "ppt:write"},
    "admin": {"supplier:write", "ppt:read", "ppt:write", "admin:read", "admin:write"},
}
_ROLE_PRIORITY = ("admin", "user")
_LOCAL_HOST_MARKERS = ("localhost", "127.0.0.1", "::1")


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = parse_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)
    email = user.get("email")

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"])),
        actor_id=user_id,
        email=email if isinstance(email, str) else None,
    )


async def get_cron_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
    host: str | None = Header(default=None, alias="Host"),
    x_forwarded_host: str | None = Header(default=None, alias="X-Forwarded-Host"),
    x_vercel_cron: str | None = Header(default=None, alias="X-Vercel-Cron"),
) -> Principal:
    if _is_local_development_request(settings, host=host, forwarded_host=x_forwarded_host):
        return Principal(principal_type=PrincipalType.CRON, subject="local-dev", scopes={"ppt:work"})

    cron_secret = (settings.cron_secret or "").strip()
    if cron_secret:
        token = parse_bearer_token(authorization) or ""
        if hmac.compare_digest(token.encode("utf-8"), cron_secret.encode("utf-8")):
            return Principal(principal_type=PrincipalType.CRON, subject="cron-secret", scopes={"ppt:work"})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized cron request")

    # Without a configured secret only the platform cron marker is accepted.
    if x_vercel_cron:
        return Principal(principal_type=PrincipalType.CRON, subject="platform-cron", scopes={"ppt:work"})
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized cron request")


def _is_local_development_request(settings: Settings, *, host: str | None, forwarded_host: str | None) -> bool:
    if settings.environment != "dev":
        return False
    source = f"{host or ''} {forwarded_host or ''}".lower()
    return any(marker in source for marker in _LOCAL_HOST_MARKERS)


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> str:
    # Only app_metadata is trusted; user_metadata is writable by the user.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return "user"

    role = app_metadata.get("role")
    if isinstance(role, str) and role in ROLE_SCOPES:
        return role

    roles = app_metadata.get("roles")
    if isinstance(roles, list):
        for candidate in _ROLE_PRIORITY:
            if candidate in roles:
                return candidate

    return "user"
