from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from agenda.database import Base


class Customer(Base):
    __tablename__ = "customer"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("auth_user.user_id"), nullable=False, index=True)

    # Basic info
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)

    # Responsible professional (owned by the professional directory)
    professional_id = Column(String)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
