import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base


class PurchaseStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Purchase(Base):
    """A buyer's order for one course. Several purchases can share one PayPal order."""
    __tablename__ = "purchases"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_purchase_user_course"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(Enum(PurchaseStatus), nullable=False, default=PurchaseStatus.PENDING)
    provider = Column(String(32), nullable=False, default="paypal")
    provider_ref = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User", back_populates="purchases")
    course = relationship("Course")
    payments = relationship("Payment", back_populates="purchase")


class Payment(Base):
    """Immutable receipt for a settled purchase"""
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("purchase_id", "provider_ref", name="uq_payment_purchase_ref"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    purchase_id = Column(Integer, ForeignKey("purchases.id"), nullable=False, index=True)
    provider = Column(String(32), nullable=False, default="paypal")
    provider_ref = Column(String(255), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(32), nullable=False, default="paid")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    purchase = relationship("Purchase", back_populates="payments")
