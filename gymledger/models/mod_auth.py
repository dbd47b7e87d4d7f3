from enum import Enum
from pydantic import BaseModel, EmailStr
from typing import Optional

class UserRole(str, Enum):
    MEMBER = "member"
    TRAINER = "trainer"
    ADMIN = "admin"

STAFF_ROLES = (UserRole.TRAINER, UserRole.ADMIN)

class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: UserRole = UserRole.MEMBER

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

class TokenData(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: UserRole = UserRole.MEMBER
    exp: Optional[float] = None
