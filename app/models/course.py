from sqlalchemy import Column, Integer, String, Boolean, DateTime, CheckConstraint
from sqlalchemy.sql import func

from .base import Base


class Course(Base):
    """Sellable course. inventory=None means unlimited seats."""
    __tablename__ = "courses"
    __table_args__ = (
        CheckConstraint("inventory IS NULL OR inventory >= 0", name="ck_courses_inventory_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    inventory = Column(Integer, nullable=True)
    is_published = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
