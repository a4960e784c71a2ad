# backend/callintel/auth/auth.py
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError as PydanticValidationError

from callintel.core.config import settings
from callintel.schemas.schemas import TokenPayload, CallerContext

# Missing credentials are reported as 401 below rather than HTTPBearer's 403
security = HTTPBearer(auto_error=False)

ACCESS_TOKEN_EXPIRE_MINUTES = 60


class AuthService:
    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create an access token."""
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

        to_encode.update({"exp": expire})
        encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
        return encoded_jwt

    @staticmethod
    def decode_token(token: str) -> TokenPayload:
        """Decode and validate a JWT token."""
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
            return TokenPayload(**payload)
        except (JWTError, PydanticValidationError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )


async def get_caller_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> CallerContext:
    """Resolve tenant and user from the bearer token; never from the body."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = AuthService.decode_token(credentials.credentials)

    if not token_data.restaurant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Restaurant ID is required"
        )

    return CallerContext(
        user_id=token_data.sub,
        restaurant_id=token_data.restaurant_id,
        role=token_data.role
    )


async def require_user(caller: CallerContext = Depends(get_caller_context)) -> CallerContext:
    """Dependency for write paths that must attribute the change to a user."""
    if not caller.user_id or not caller.user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User ID is required"
        )
    return caller


async def require_operator(caller: CallerContext = Depends(get_caller_context)) -> CallerContext:
    """Dependency to require a pipeline operator role."""
    if caller.role not in settings.OPERATOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required"
        )
    return caller
