from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import HTTPException, Request

from pharmacy_checkout.core_settings import get_settings
from shared.core import set_request_context

BEARER_PREFIX = "Bearer "
ADMIN_ROLE = "ADMIN"

@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: str = "CUSTOMER"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

def create_access_token(user_id: int, role: str = "CUSTOMER", expires_minutes: int = 60) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {"sub": str(user_id), "role": role, "iat": now, "exp": now + timedelta(minutes=expires_minutes)}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)

def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.PyJWTError:
        return None

def get_current_user(request: Request) -> CurrentUser:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Missing token")
    token_data = decode_access_token(auth_header[len(BEARER_PREFIX):])
    if not token_data or not str(token_data.get("sub", "")).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token")
    user = CurrentUser(id=int(token_data["sub"]), role=token_data.get("role", "CUSTOMER"))
    set_request_context(user_id=str(user.id))
    return user
