"""
Bearer-token identity for the API.

Tokens are HS256 JWTs carrying the user id in ``sub``. Checkout accepts a
missing or unusable token as a guest; everything else requires a user.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from database import db

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False),
        "exp": datetime.now(timezone.utc) + timedelta(days=config.TOKEN_TTL_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def _user_from_token(token: str, database) -> Optional[dict]:
    payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        return None
    return database["user"].find_one({"_id": ObjectId(user_id)}, {"password_hash": 0})


def get_current_user(authorization: Optional[str] = Header(None), database=Depends(get_db)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    token = authorization.replace("Bearer ", "").strip()
    try:
        user = _user_from_token(token, database)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token user")
    return user


def get_optional_user(authorization: Optional[str] = Header(None), database=Depends(get_db)):
    if not authorization:
        return None
    token = authorization.replace("Bearer ", "").strip()
    try:
        return _user_from_token(token, database)
    except JWTError:
        logger.debug("Ignoring invalid token on guest-capable route")
        return None


def require_admin(user=Depends(get_current_user)):
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return user
