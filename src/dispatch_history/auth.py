"""Caller identity for API requests.

Authentication happens upstream. By the time a request reaches this service
the gateway has put the verified user id into the X-Caller-Id header, and
get_current_caller() only parses it.
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Header

from dispatch_history.errors import UnauthenticatedError

CALLER_HEADER = "X-Caller-Id"


@dataclass(frozen=True)
class CallerContext:
    """The user a request acts on behalf of."""

    user_id: uuid.UUID


async def get_current_caller(
    x_caller_id: Annotated[str | None, Header(alias=CALLER_HEADER)] = None,
) -> CallerContext:
    """FastAPI dependency resolving the caller from the X-Caller-Id header.

    Raises:
        UnauthenticatedError: If the header is missing or not a UUID.
    """
    if not x_caller_id:
        raise UnauthenticatedError(f"Missing {CALLER_HEADER} header")
    try:
        return CallerContext(user_id=uuid.UUID(x_caller_id))
    except ValueError:
        raise UnauthenticatedError(f"{CALLER_HEADER} must be a UUID") from None
