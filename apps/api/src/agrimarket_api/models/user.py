from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from agrimarket_api.db.base import Base


class UserRoleEnum(str, Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"


class User(Base):
    """Marketplace identity owned by the auth collaborator; loyalty only references it."""

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    phone_number = Column(String(32), nullable=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.CUSTOMER.value, server_default=UserRoleEnum.CUSTOMER.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
