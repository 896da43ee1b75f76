from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base


class User(Base):
    """Marketplace customer. Credentials live with the platform's auth service."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    purchases = relationship("Purchase", back_populates="user")
    enrollments = relationship("Enrollment", back_populates="user")
    subscriptions = relationship("Subscription", back_populates="user")
