from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

ADMIN_ROLES = frozenset({"admin", "platform_admin", "service_role"})


class AuthUser(BaseModel):
    """
    Represents an authenticated PaidIn user, decoded from the bearer JWT.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(..., alias="sub")
    company_id: Optional[int] = None
    email: Optional[EmailStr] = None
    role: str = "employee"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES
