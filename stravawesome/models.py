import base64
import hashlib
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import (Column, DateTime, Float, ForeignKey, Integer, String, Text,
                        TypeDecorator, UniqueConstraint)
from sqlalchemy.orm import relationship

from .config import settings
from .database import Base

# Fernet keys must be 32 url-safe base64-encoded bytes; derive one from SECRET_KEY.
key = base64.urlsafe_b64encode(hashlib.sha256(settings.SECRET_KEY.encode()).digest())
fernet = Fernet(key)

STRAVA_PROVIDER = "strava"

class EncryptedString(TypeDecorator):
    """Stored as encrypted text, decrypted on load."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return fernet.encrypt(value.encode()).decode()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled
            return value

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=True)
    profile_picture = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    goals = relationship("Goal", back_populates="user", cascade="all, delete-orphan")
    subscription = relationship("Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan")

class Account(Base):
    """A linked OAuth account (currently only Strava)."""
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("provider", "provider_account_id", name="uq_account_provider"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False, default=STRAVA_PROVIDER)
    provider_account_id = Column(String, nullable=False)
    access_token = Column(EncryptedString, nullable=True)
    refresh_token = Column(EncryptedString, nullable=True)
    expires_at = Column(Integer, nullable=True)   # Unix timestamp
    scope = Column(String, nullable=True)

    user = relationship("User", back_populates="accounts")

class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (UniqueConstraint("user_id", "year", "activity_type", name="uq_goal_user_year_type"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    year = Column(Integer, nullable=False)
    activity_type = Column(String, nullable=False)
    target_distance = Column(Float, nullable=False)  # miles
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="goals")

    def to_dict(self):
        return {
            "id": self.id,
            "year": self.year,
            "activityType": self.activity_type,
            "targetDistance": self.target_distance,
        }

class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    polar_subscription_id = Column(String, index=True, nullable=True)
    status = Column(String, nullable=False, default="active")
    plan = Column(String, nullable=False, default="annual")
    current_period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="subscription")

    def to_dict(self):
        return {
            "id": self.id,
            "status": self.status,
            "plan": self.plan,
            "polarSubscriptionId": self.polar_subscription_id,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
        }
