"""Domain Entities - Auth"""
from pydantic import BaseModel
from typing import Optional

from domain.enums import Role, ActorKind
from domain.value_objects import Actor


class User(BaseModel):
    """User Entity"""
    user_id: str
    username: str
    company_id: str
    role: Role = Role.CUSTOMER
    email: Optional[str] = None
    full_name: Optional[str] = None
    disabled: bool = False

    class Config:
        from_attributes = True

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.STAFF, Role.ADMIN)

    def as_actor(self) -> Actor:
        """Attribution for calls made by this user"""
        kind = ActorKind.STAFF if self.is_staff else ActorKind.USER
        return Actor(kind=kind, id=self.user_id)


class UserInDB(User):
    """User with hashed password for DB storage"""
    hashed_password: str
