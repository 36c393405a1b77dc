from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext

from .config import JWT_ALG, JWT_SECRET, TOKEN_HOURS

bearer = HTTPBearer(auto_error=False)
pwd = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_pin(plain: str) -> str:
    return pwd.hash(plain)


def verify_pin(plain: str, hashed: str) -> bool:
    try:
        return pwd.verify(plain, hashed)
    except (ValueError, TypeError):
        return False


def create_token(sub: str, claims: Dict, hours: int = TOKEN_HOURS) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=hours)).timestamp()),
        **claims
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_token(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> dict:
    if not creds or not creds.credentials:
        raise HTTPException(status_code=401, detail="Missing credentials")
    return decode_token(creds.credentials)
