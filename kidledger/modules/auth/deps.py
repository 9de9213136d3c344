from dataclasses import dataclass

import jwt
from fastapi import HTTPException, Request, status

from kidledger.core.config import GetEnv

PARENT_ROLE = "Parent"
CHILD_ROLE = "Child"
ALLOWED_ROLES = {PARENT_ROLE, CHILD_ROLE}


@dataclass
class UserContext:
    """Acting identity. For children ``Id`` is the child account id."""

    Id: int
    Username: str
    Role: str


def _Unauthorized(detail: str = "Invalid token") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _TokenSettings() -> tuple[str, str, int]:
    secret = GetEnv("JWT_SECRET_KEY")
    if not secret:
        raise RuntimeError("Missing required env var: JWT_SECRET_KEY")
    algorithm = GetEnv("JWT_ALGORITHM", "HS256")
    leeway = int(GetEnv("JWT_LEEWAY_SECONDS", "0"))
    return secret, algorithm, leeway


def ParseAccessToken(token: str) -> UserContext:
    secret, algorithm, leeway = _TokenSettings()
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm], leeway=leeway)
    except jwt.ExpiredSignatureError as exc:
        raise _Unauthorized("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise _Unauthorized() from exc

    subject = claims.get("sub")
    if not subject:
        raise _Unauthorized()
    try:
        actor_id = int(subject)
    except (TypeError, ValueError) as exc:
        raise _Unauthorized() from exc

    role = claims.get("role")
    if role not in ALLOWED_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return UserContext(Id=actor_id, Username=str(claims.get("username") or ""), Role=role)


def RequireAuthenticated(request: Request) -> UserContext:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _Unauthorized("Authentication required")
    return ParseAccessToken(token.strip())
