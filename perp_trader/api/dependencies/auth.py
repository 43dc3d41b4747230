"""Control route authentication."""
import hmac
from typing import Optional

from fastapi import Header, HTTPException
from perp_trader.config import settings


def require_control_token(x_control_token: Optional[str] = Header(default=None)):
    expected = settings.CONTROL_API_TOKEN
    if not expected:
        raise HTTPException(status_code=401, detail="Control API disabled: CONTROL_API_TOKEN is not set")
    if not x_control_token or not hmac.compare_digest(x_control_token, expected):
        raise HTTPException(status_code=401, detail="Invalid control token")
    return True

__all__ = ["require_control_token"]
