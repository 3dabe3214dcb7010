from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.sql import func
from agenda.database import Base


class CustomerPackage(Base):
    """One purchase of a catalog package by a customer."""
    __tablename__ = "customer_package"
    __table_args__ = (
        UniqueConstraint("user_id", "intent_id", name="uq_customer_package_intent"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_package_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("auth_user.user_id"), nullable=False, index=True)
    customer_id = Column(String, ForeignKey("customer.customer_id"), nullable=False, index=True)

    # No foreign key: the catalog entry may be deleted after the purchase
    package_id = Column(String, nullable=False, index=True)

    purchase_date = Column(DateTime(timezone=True), nullable=False)
    expiration_date = Column(DateTime(timezone=True))
    paid = Column(Boolean, nullable=False, default=True)

    # Client-generated purchase intent id (idempotency key)
    intent_id = Column(String)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class PackageServiceBalance(Base):
    """Remaining sessions of one service within one purchase."""
    __tablename__ = "customer_package_service"
    __table_args__ = (
        UniqueConstraint("customer_package_id", "service_id", name="uq_customer_package_service"),
        CheckConstraint("sessions_remaining >= 0", name="ck_sessions_remaining_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_package_id = Column(
        String, ForeignKey("customer_package.customer_package_id"), nullable=False, index=True
    )
    service_id = Column(String, nullable=False)
    sessions_purchased = Column(Integer, nullable=False)
    sessions_remaining = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
