from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Numeric, Text, ForeignKey,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from agenda.database import Base


class Package(Base):
    __tablename__ = "package"

    id = Column(Integer, primary_key=True, index=True)
    package_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("auth_user.user_id"), nullable=False, index=True)

    name = Column(String, nullable=False, index=True)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    expires_after_days = Column(Integer)  # NULL = never expires

    active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    services = relationship(
        "PackageService",
        cascade="all, delete-orphan",
        order_by="PackageService.id",
        lazy="selectin",
    )


class PackageService(Base):
    """Quantity of one service included in a catalog package."""
    __tablename__ = "package_service"
    __table_args__ = (
        UniqueConstraint("package_id", "service_id", name="uq_package_service"),
        CheckConstraint("quantity > 0", name="ck_package_service_quantity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    package_id = Column(String, ForeignKey("package.package_id"), nullable=False, index=True)
    service_id = Column(String, ForeignKey("service.service_id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
