"""
Authentication for the marketplace.
Password hashing, JWT issue/verify, and the current-user dependencies.
"""
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt as pyjwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import database
from config import JWT_ALGORITHM, JWT_EXPIRY_HOURS, JWT_SECRET, PBKDF2_ITERATIONS, ROLES


# ========== PASSWORD HASHING ==========
def hash_password(password: str) -> str:
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        _, iterations, salt_hex, digest_hex = hashed.split("$")
        digest = hashlib.pbkdf2_hmac(
            "sha256", password.encode(), bytes.fromhex(salt_hex), int(iterations)
        )
    except (ValueError, AttributeError):
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


# ========== JWT ==========
def create_jwt(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user["id"],
        "role": user["role"],
        "username": user["username"],
        "iat": now,
        "exp": now + timedelta(hours=JWT_EXPIRY_HOURS),
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> dict:
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(401, "Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(401, "Invalid token")


# ========== REGISTRY LOOKUPS ==========
def opposite_role(role: str) -> str:
    return "buyer" if role == "seller" else "seller"


def find_account_by_username(username: str) -> Tuple[Optional[str], Optional[dict]]:
    """Sellers are checked before buyers; returns (role, account) or (None, None)."""
    for role in ("seller", "buyer"):
        account = database.collection(role).find_one({"username": username})
        if account:
            return role, account
    return None, None


def find_account_by_email(email: str) -> Tuple[Optional[str], Optional[dict]]:
    for role in ROLES:
        account = database.collection(role).find_one({"email": email})
        if account:
            return role, account
    return None, None


def account_to_user(role: str, account: dict) -> dict:
    return {
        "id": str(account["_id"]),
        "role": role,
        "username": account.get("username", ""),
        "email": account.get("email", ""),
    }


def user_from_token(token: str) -> dict:
    payload = decode_jwt(token)
    role = payload.get("role")
    if role not in ROLES:
        raise HTTPException(401, "Invalid token")
    account = database.get_document(role, payload.get("sub"))
    if not account:
        raise HTTPException(401, "User no longer exists")
    return account_to_user(role, account)


# ========== DEPENDENCIES ==========
bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> dict:
    if not credentials:
        raise HTTPException(401, "Authentication required")
    return user_from_token(credentials.credentials)


def require_role(role: str):
    """Dependency factory: the caller must hold `role`."""
    def checker(user: dict = Depends(get_current_user)) -> dict:
        if user["role"] != role:
            raise HTTPException(403, f"Only {role}s can do this")
        return user
    return checker
