from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from app.config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

ADMIN_ROLE = "admin"
INTERNAL_ROLE = "internal"

async def get_current_user(token: str = Depends(oauth2_scheme)) -> dict:
    """Decode the host application's access token into ``{"user_id", "role"}``."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        user_id = UUID(str(subject))
    except (JWTError, ValueError):
        raise credentials_exception

    return {"user_id": user_id, "role": str(payload.get("role") or "").lower()}

async def get_admin_user(current_user: dict = Depends(get_current_user)):
    if current_user.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to perform this action")
    return current_user

async def get_admin_or_internal_user(current_user: dict = Depends(get_current_user)):
    if current_user.get("role") not in [ADMIN_ROLE, INTERNAL_ROLE]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to perform this action")
    return current_user
