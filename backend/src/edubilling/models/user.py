"""User model shared with the school-management side of the platform."""
from sqlalchemy import Boolean, Column, ForeignKey, String, Uuid, Enum as SQLEnum
import enum

from edubilling.models.base import Base


class UserRole(enum.Enum):
    """Platform role of a user."""

    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class User(Base):
    """Tenant member. Only the fields billing reads or provisions are mapped."""

    __tablename__ = "users"

    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    role = Column(SQLEnum(UserRole), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<User(id={self.id}, email={self.email}, role={self.role.value})>"
