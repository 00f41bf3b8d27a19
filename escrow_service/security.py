import hashlib
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    settings = request.app.state.settings
    if not settings.jwt_secret:
        raise RuntimeError("JWT_SECRET environment variable is not set")

    token = None
    if creds and creds.scheme.lower() == "bearer":
        token = creds.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    request.state.user_sub = payload.get("sub")
    request.state.user_roles = payload.get("roles")
    return payload


def require_role(payload: dict, allowed_roles: list[str]):
    token_roles = payload.get("roles")

    if not isinstance(token_roles, list) or not token_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing in token",
        )

    allowed = {r.lower() for r in allowed_roles}
    roles = {str(r).lower() for r in token_roles}

    if roles.isdisjoint(allowed):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )


async def verify_gateway_signature(request: Request):
    """
    Paystack signs webhook bodies with HMAC-SHA512 of the raw payload, keyed
    with the account secret key. A dedicated webhook secret takes precedence.
    Without either, callbacks are refused.
    """
    settings = request.app.state.settings
    secret = settings.gateway_webhook_secret or settings.gateway_secret_key
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Gateway callbacks are not configured",
        )

    signature = request.headers.get("X-Paystack-Signature") or ""
    body = await request.body()
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid gateway signature",
        )


def require_booking_party(payload: dict, booking, roles: tuple[str, ...] = ("customer", "provider")):
    """
    The caller must be the booking's customer or provider, matched by id or
    email against the token subject. Admins may act on any booking.
    """
    token_roles = {str(r).lower() for r in payload.get("roles") or []}
    if "admin" in token_roles:
        return

    sub = payload.get("sub")
    parties = {
        "customer": (booking.customer_id, booking.customer_email),
        "provider": (booking.provider_id, booking.provider_email),
    }
    for role in roles:
        if role in token_roles and sub in parties[role]:
            return

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not a party to this booking",
    )
