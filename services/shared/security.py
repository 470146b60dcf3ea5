import os
from typing import Iterable, Optional

from fastapi import Header, HTTPException
from jose import jwt, JWTError, ExpiredSignatureError

JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set")
ALGO = "HS256"

JWT_ISSUER = os.getenv("JWT_ISSUER")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE")


def decode_bearer(authorization: Optional[str]) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        options = {"verify_aud": bool(JWT_AUDIENCE)}
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[ALGO],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
            options=options,
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    email = str(claims.get("email") or "").strip().lower()
    if not email:
        raise HTTPException(status_code=401, detail="Token has no email")
    claims["email"] = email
    return claims


def require_user(authorization: str = Header(default=None)) -> dict:
    return decode_bearer(authorization)


def optional_user(authorization: str = Header(default=None)) -> Optional[dict]:
    """Claims for a bearer token if one was sent, None otherwise.

    A token that is present but invalid is still rejected with 401.
    """
    if not authorization:
        return None
    return decode_bearer(authorization)


def is_admin(email: Optional[str], allow_list: Iterable[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in {e.strip().lower() for e in allow_list if e}
