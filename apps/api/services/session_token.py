"""Signed service tokens the chat front-end presents to the API.

Tokens identify the calling front-end deployment and its role, not the end
user; end users are identified only by the account ids the front-end sends.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SERVICE_TOKEN_TYPE = "mcv_service"
ROLE_FRONTEND = "frontend"
ROLE_ADMIN = "admin"
VALID_ROLES = (ROLE_FRONTEND, ROLE_ADMIN)


@dataclass(frozen=True)
class ServiceIdentity:
    client_id: str
    role: str
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def create_service_token(
    client_id: str,
    role: str = ROLE_FRONTEND,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role: {role}")
    issued = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued + lifetime).timestamp())
    token = jwt.encode(
        {
            "sub": client_id,
            "role": role,
            "type": SERVICE_TOKEN_TYPE,
            "iat": int(issued.timestamp()),
            "exp": expires_at,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    return {"token": token, "role": role, "expires_at": expires_at}


def decode_service_token(token: str) -> ServiceIdentity:
    """Verify signature, expiry, token type and role; raise ValueError otherwise."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired service token.") from exc

    if claims.get("type") != SERVICE_TOKEN_TYPE:
        raise ValueError("Not a service token.")
    client_id = str(claims.get("sub") or "").strip()
    if not client_id:
        raise ValueError("Service token does not name a client.")
    role = str(claims.get("role") or "")
    if role not in VALID_ROLES:
        raise ValueError(f"Service token role {role!r} is not recognised.")

    return ServiceIdentity(
        client_id=client_id,
        role=role,
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )
