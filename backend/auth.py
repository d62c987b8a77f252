"""
Caller identity for sync routes.

Token verification happens upstream: the gateway that validated the
access token forwards the account and device it was issued for as
`X-User-Id` and `X-Device-Id`. This module only reads those headers and
rejects requests that arrive without them.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from errors import UnauthorizedError


@dataclass(frozen=True)
class Identity:
    user_id: str
    device_id: str


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_device_id: Optional[str] = Header(default=None),
) -> Identity:
    if not x_user_id or not x_device_id:
        raise UnauthorizedError("Missing verified identity")
    return Identity(user_id=x_user_id.strip(), device_id=x_device_id.strip())
