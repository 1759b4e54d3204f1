"""
Bearer-token authentication for the sync API.

Access tokens are issued by the product's account service and signed with the
shared secret_key. This service only verifies them and loads the user.
"""

from typing import Optional

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from ledgersync.config import get_settings
from ledgersync.database import get_db
from .models import User
from .schemas import TokenData

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login")


def decode_access_token(token: str) -> Optional[TokenData]:
    """
    Verify signature and expiry of an access token.

    The subject is the user's email; newer tokens also carry the numeric
    user id as "uid".
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None

    email = payload.get("sub")
    if not email:
        return None
    return TokenData(email=email, user_id=payload.get("uid"))


async def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token_data = decode_access_token(token)
    if token_data is None:
        raise credentials_exception

    query = db.query(User)
    if token_data.user_id is not None:
        user = query.filter(User.id == token_data.user_id, User.email == token_data.email).first()
    else:
        user = query.filter(User.email == token_data.email).first()

    if user is None:
        raise credentials_exception
    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return current_user
