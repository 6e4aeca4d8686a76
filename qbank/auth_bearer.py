from dataclasses import dataclass
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from . import config

ALLOWED_ROLES = ("teacher", "admin")


@dataclass
class CurrentUser:
    id: str
    role: str


def decodeJWT(jwtoken: str):
    try:
        return jwt.decode(jwtoken, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        return None


class JWTBearer(HTTPBearer):
    def __init__(self, auto_error: bool = True):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request):
        credentials: HTTPAuthorizationCredentials = await super().__call__(request)
        if credentials:
            if credentials.scheme != "Bearer":
                raise HTTPException(status_code=403, detail="Invalid authentication scheme.")
            payload = decodeJWT(credentials.credentials)
            if payload is None:
                raise HTTPException(status_code=403, detail="Invalid or expired token.")
            return payload
        else:
            raise HTTPException(status_code=403, detail="Invalid authorization code.")


jwt_bearer = JWTBearer()


def get_current_user(payload: dict = Depends(jwt_bearer)) -> CurrentUser:
    """Authenticated teacher or admin; the user id comes from the ``sub`` claim."""
    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id:
        raise HTTPException(status_code=403, detail="Token has no subject.")
    if role not in ALLOWED_ROLES:
        raise HTTPException(status_code=403, detail="Only teachers and admins can manage the question bank.")
    return CurrentUser(id=str(user_id), role=role)
