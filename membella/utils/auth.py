from typing import Optional
from jose import JWTError, jwt
import os
from fastapi.security import HTTPBearer


# JWT settings. Tokens are issued by the identity provider; we only verify them.
SECRET_KEY = os.getenv("JWT_SECRET_KEY")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> Optional[str]:
    """Return the member id carried in `sub`, or None for an invalid token."""
    if not SECRET_KEY:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload.get("sub")
    except (JWTError, ValueError):
        return None
