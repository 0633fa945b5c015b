# ticketing_engine/utils/auth_utils.py
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from ticketing_engine.config import Settings
from ticketing_engine.engine import TicketingEngine, get_engine

ACCESS_TOKEN_EXPIRE_MINUTES = 30


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None):
    """Generate JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta if expires_delta else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return encoded_jwt


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(request: Request, engine: TicketingEngine = Depends(get_engine)):
    """Extract JWT token from Authorization header and return the caller."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise _unauthorized("Invalid authorization header")

    token = auth_header.split(" ")[1]  # Extract token after "Bearer"

    try:
        payload = jwt.decode(token, engine.settings.jwt_secret_key,
                             algorithms=[engine.settings.jwt_algorithm])
    except JWTError:
        raise _unauthorized("Invalid credentials")

    user_id = payload.get("sub")
    if user_id is None:
        raise _unauthorized("Invalid token")

    # Identities are issued elsewhere; the token is the whole user record here
    return {"id": user_id, "role": payload.get("role", "customer"), "email": payload.get("email")}


def manager_required(user=Depends(get_current_user)):
    if user.get("role") != "manager":
        raise HTTPException(status_code=403, detail="Only managers can perform this action")
    return user
