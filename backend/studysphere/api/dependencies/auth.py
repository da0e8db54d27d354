# backend/studysphere/api/dependencies/auth.py
"""
Authentication dependency.

Authentication itself lives outside the messaging core. Whatever sits in
front of it (session middleware, gateway, token check) stores the
authenticated user id on ``request.state.user_id``; these routes only read
it.
"""

import logging
from typing import Optional

from fastapi import Request

from ...core.exceptions import UnauthorizedException

logger = logging.getLogger(__name__)


def get_current_user_id(request: Request) -> str:
    """Return the authenticated user id, or fail with 401."""
    user_id: Optional[str] = getattr(request.state, "user_id", None)
    if not user_id:
        logger.debug("Rejected unauthenticated request to %s", request.url.path)
        raise UnauthorizedException(
            "Authentication required", code="NOT_AUTHENTICATED"
        ).to_http_exception()
    return str(user_id)
