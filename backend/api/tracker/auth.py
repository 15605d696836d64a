"""Principal resolution.

Token issuance lives in front of this service; by the time a request reaches
us the gateway has put the authenticated user id in the "X-User-Id" header.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from tracker import repo
from tracker.db import get_engine

PRINCIPAL_HEADER = "X-User-Id"


def current_principal(request: Request) -> Optional[int]:
    """The authenticated user id for this request, or None."""
    user = getattr(request.state, "user", None)
    if user is None:
        return None
    return int(user["id"])


def resolve_user(x_user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Resolve the principal from the raw header value.

    Returns None when the header is absent. Raises KeyError when it names a
    user that does not exist and ValueError when it is not an id at all.
    """
    raw = (x_user_id or "").strip()
    if not raw:
        return None
    return repo.get_user(get_engine(), int(raw))


def optional_user(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias=PRINCIPAL_HEADER),
) -> Optional[Dict[str, Any]]:
    try:
        user = resolve_user(x_user_id)
    except (KeyError, ValueError):
        user = None
    request.state.user = user
    return user


def require_user(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias=PRINCIPAL_HEADER),
) -> Dict[str, Any]:
    try:
        user = resolve_user(x_user_id)
    except (KeyError, ValueError):
        user = None

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized to access this route",
        )

    request.state.user = user
    return user


def require_admin(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return user
