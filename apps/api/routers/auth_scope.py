"""Bearer service-token dependencies for front-end and admin callers."""

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import ServiceIdentity, decode_service_token


auth_scheme = HTTPBearer(auto_error=False)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> ServiceIdentity:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing Bearer service token.")
    try:
        return decode_service_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


async def require_admin(identity: ServiceIdentity = Depends(get_auth_context)) -> ServiceIdentity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return identity
