from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from pettrack_payments.config import get_settings


def verify_token(authorization: str = Header(...)) -> dict:
    settings = get_settings()
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return claims


def current_user_id(claims: dict = Depends(verify_token)) -> str:
    return claims["sub"]


def require_admin(claims: dict = Depends(verify_token)) -> str:
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims["sub"]
