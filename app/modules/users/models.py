from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from app.core.database import Base


class User(Base):
    """User account and public display identity"""
    __tablename__ = "users"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True)

    # Authentication
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)

    # Public profile
    username = Column(String(50), unique=True, index=True, nullable=False)
    full_name = Column(String(200), nullable=False)  # Legal name, typed to sign agreements
    avatar_url = Column(String(500), nullable=True)

    # Payment handles, used only to build deep links
    venmo_username = Column(String(100), nullable=True)
    cashapp_handle = Column(String(100), nullable=True)
    paypal_email = Column(String(255), nullable=True)
    zelle_email = Column(String(255), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"
