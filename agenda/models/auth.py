from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from agenda.database import Base


class AuthUser(Base):
    """A business account. Its user_id owns every catalog, customer and purchase row."""
    __tablename__ = "auth_user"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String)
    role = Column(String, nullable=False, default="owner")  # owner, staff
    active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login_at = Column(DateTime(timezone=True))
