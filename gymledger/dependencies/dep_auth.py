from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from pydantic import ValidationError
from gymledger.models.mod_auth import AuthUser, UserRole, TokenData
from gymledger.configuration.config import Config

# Tokens are issued by the external identity service
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

def _credentials_exception(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )

def verify_token(token: str) -> TokenData:
    """
    Verify the JWT token and extract its claims.
    Raises HTTPException if token is invalid or expired.
    """
    if not Config.JWT_SECRET_KEY:
        raise _credentials_exception("Authentication is not configured")
    try:
        payload = jwt.decode(token, Config.JWT_SECRET_KEY, algorithms=[Config.JWT_ALGORITHM])
        return TokenData(
            id=payload.get("sub"),
            email=payload.get("email"),
            name=payload.get("name"),
            role=payload.get("role", UserRole.MEMBER.value),
            exp=payload.get("exp")
        )
    except (JWTError, ValidationError):
        raise _credentials_exception("Could not validate credentials")

async def get_current_user(token: str = Depends(oauth2_scheme)) -> AuthUser:
    """Main dependency for protected endpoints."""
    token_data = verify_token(token)
    return AuthUser(
        id=token_data.id,
        email=token_data.email,
        name=token_data.name,
        role=token_data.role
    )

def get_current_admin(current_user: AuthUser = Depends(get_current_user)) -> AuthUser:
    """Dependency for endpoints that require admin access"""
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You don't have permission to perform this action"
        )
    return current_user

def get_current_staff(current_user: AuthUser = Depends(get_current_user)) -> AuthUser:
    """Dependency for endpoints that require trainer or admin access"""
    if not current_user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You don't have permission to perform this action"
        )
    return current_user
