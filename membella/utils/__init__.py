"""
Utility functions package.
"""

from . import auth
from .auth import decode_access_token
from .rate_limit import limiter

__all__ = [
    "auth",
    "decode_access_token",
    "limiter",
]
