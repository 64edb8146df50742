from datetime import datetime, timezone, date as date_type

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow():
    """Naive UTC timestamp, as stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    if isinstance(value, (datetime, date_type)):
        return value.isoformat()
    return value


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "created_at": _iso(self.created_at),
        }


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    amount = Column(Float, nullable=False)
    date = Column(Date, nullable=False)
    category = Column(JSON, nullable=False, default=list)  # list of strings
    source = Column(String(20), nullable=False, default="manual")  # manual / receipt
    confidence = Column(Float, nullable=True)
    items = Column(JSON, nullable=True)
    file_name = Column(String(255), nullable=True)
    need_vs_want = Column(String(10), nullable=True)  # Need / Want
    mood_at_purchase = Column(Text, nullable=True)
    ai_insight = Column(Text, nullable=True)
    archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "amount": self.amount,
            "date": _iso(self.date),
            "category": list(self.category or []),
            "source": self.source,
            "confidence": self.confidence,
            "items": self.items,
            "file_name": self.file_name,
            "need_vs_want": self.need_vs_want,
            "mood_at_purchase": self.mood_at_purchase,
            "ai_insight": self.ai_insight,
            "archived": bool(self.archived),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class SpendingLog(Base):
    __tablename__ = "spending_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    date = Column(Date, nullable=False)
    category = Column(String(100), nullable=True)
    merchant = Column(String(255), nullable=True)
    source = Column(String(20), nullable=False, default="manual")
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "date": _iso(self.date),
            "category": self.category,
            "merchant": self.merchant,
            "source": self.source,
            "created_at": _iso(self.created_at),
        }


class MoodLog(Base):
    __tablename__ = "mood_logs"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_mood_logs_user_date"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    mood = Column(Integer, nullable=False)  # 1..10
    notes = Column(Text, nullable=True)
    date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "mood": self.mood,
            "notes": self.notes,
            "date": _iso(self.date),
            "created_at": _iso(self.created_at),
        }


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="New Chat")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    messages = relationship(
        "ChatMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ChatMessage.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("chat_sessions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(String(20), nullable=False)  # user / assistant / system
    content = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    session = relationship("ChatSession", back_populates="messages")

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "role": self.role,
            "content": self.content,
            "metadata": self.meta or {},
            "created_at": _iso(self.created_at),
        }


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    subscription_tier = Column(String(20), nullable=False, default="free")
    status = Column(String(20), nullable=False, default="active")
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "subscription_tier": self.subscription_tier,
            "status": self.status,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
        }


class UserUsage(Base):
    __tablename__ = "user_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "feature_type", "month_year", name="uq_user_usage_month"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    feature_type = Column(String(30), nullable=False)  # transactions / receipts / ai_chats
    month_year = Column(String(7), nullable=False)  # YYYY-MM
    usage_count = Column(Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "feature_type": self.feature_type,
            "month_year": self.month_year,
            "usage_count": self.usage_count or 0,
        }


class CalendarData(Base):
    __tablename__ = "calendar_data"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    calendar_form = Column(JSON, nullable=True)
    task_statuses = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "calendar_form": self.calendar_form,
            "task_statuses": self.task_statuses or {},
            "updated_at": _iso(self.updated_at),
        }
