"""Identity verification dependencies and API access logging"""
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import AuthenticationError
from app.core.metrics import auth_failures_counter
from app.db.session import get_db
from app.models.user import User

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify a bearer token and return its claims.

    The ``sub`` claim is the stable user identity.

    Raises:
        AuthenticationError: bad signature, expired, wrong audience or no subject
    """
    if not settings.JWT_SECRET:
        auth_failures_counter.labels(reason="not_configured").inc()
        raise AuthenticationError("Authentication is not configured")

    options = {"require": ["exp", "sub"]}
    try:
        if settings.JWT_AUDIENCE:
            payload = jwt.decode(
                token, settings.JWT_SECRET,
                algorithms=[settings.JWT_ALGORITHM],
                audience=settings.JWT_AUDIENCE,
                options=options,
            )
        else:
            options["verify_aud"] = False
            payload = jwt.decode(
                token, settings.JWT_SECRET,
                algorithms=[settings.JWT_ALGORITHM],
                options=options,
            )
    except jwt.ExpiredSignatureError:
        auth_failures_counter.labels(reason="expired").inc()
        raise AuthenticationError("Authentication token has expired")
    except jwt.InvalidTokenError as e:
        auth_failures_counter.labels(reason="invalid").inc()
        security_logger.warning(f"Rejected bearer token: {e}")
        raise AuthenticationError("Invalid authentication token")

    if not payload.get("sub"):
        auth_failures_counter.labels(reason="invalid").inc()
        raise AuthenticationError("Invalid authentication token")
    return payload


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    expires_minutes: int = 60
) -> str:
    """Issue a token the verifier accepts. Used by tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if email:
        payload["email"] = email
    if display_name:
        payload["user_metadata"] = {"full_name": display_name}
    if settings.JWT_AUDIENCE:
        payload["aud"] = settings.JWT_AUDIENCE
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def require_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """Dependency: Require a valid bearer token, return user_id"""
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        auth_failures_counter.labels(reason="missing").inc()
        security_logger.info(
            f"Missing bearer credential - Path: {request.url.path}, "
            f"IP: {get_client_ip(request)}"
        )
        raise AuthenticationError("No authorization header provided")

    claims = decode_access_token(credentials.credentials)
    request.state.token_claims = claims
    return str(claims["sub"])


def require_user(
    request: Request,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
) -> User:
    """Dependency: Require auth and return the caller's profile row.

    The profile is mirrored from the token on first sight so that other users
    can find the caller by email.
    """
    claims = getattr(request.state, "token_claims", {})
    user = db.query(User).filter(User.id == user_id).first()
    if user:
        return user

    email = claims.get("email")
    if not email:
        security_logger.warning(f"Token for unknown user {user_id} carries no email claim")
        raise AuthenticationError("User profile not found")

    metadata = claims.get("user_metadata") or {}
    user = User(
        id=user_id,
        email=email.lower(),
        display_name=metadata.get("full_name") or metadata.get("name"),
        avatar_url=metadata.get("avatar_url"),
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent first request created it
        db.rollback()
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise AuthenticationError("User profile not found")
        return user
    db.refresh(user)
    security_logger.info(f"Created profile for user {user_id}")
    return user


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def log_api_access(
    request: Request,
    status_code: int = 200,
    error: Optional[str] = None,
    duration_ms: Optional[float] = None
):
    """Log detailed API access information"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "origin": request.headers.get("Origin", "none"),
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2) if duration_ms is not None else None,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
