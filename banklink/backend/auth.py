from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("banklink.backend.auth")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


class JWTVerifier:
    """Verifies identity tokens issued by the app's auth provider."""

    def __init__(self, secret: Optional[str], audience: Optional[str] = None, algorithm: str = "HS256"):
        self._secret = secret
        self.audience = audience
        self.algorithm = algorithm

    def verify(self, token: str) -> AuthenticatedUser:
        if not self._secret:
            logger.error("AUTH_JWT_SECRET is not configured; rejecting request")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication_unavailable")
        try:
            payload: Dict[str, Any] = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"require": ["sub", "exp"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token_expired") from exc
        except jwt.PyJWTError as exc:
            logger.info("JWT validation failed: %s", exc)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc
        return AuthenticatedUser(user_id=str(payload["sub"]), email=payload.get("email"))

    def issue(self, user_id: str, email: Optional[str] = None, expires_in: int = 3600) -> str:
        """Mint a token for local development and tests."""
        if not self._secret:
            raise RuntimeError("AUTH_JWT_SECRET is not configured")
        claims: Dict[str, Any] = {
            "sub": user_id,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        if email:
            claims["email"] = email
        if self.audience:
            claims["aud"] = self.audience
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthenticatedUser:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_token")
    verifier: JWTVerifier = request.app.state.services.verifier
    return verifier.verify(credentials.credentials)
