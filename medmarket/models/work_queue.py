"""Clinical work queues and after-hours load tracking."""
from sqlalchemy import Column, Integer, String, DateTime, Date, Boolean, Text, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from medmarket.core.database import Base


class WorkQueue(Base):
    __tablename__ = "work_queues"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    queue_type = Column(String(50), default="inbox")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship("WorkQueueItem", back_populates="queue", cascade="all, delete-orphan")


class WorkQueueItem(Base):
    __tablename__ = "work_queue_items"

    id = Column(Integer, primary_key=True, index=True)
    queue_id = Column(Integer, ForeignKey("work_queues.id", ondelete="CASCADE"), nullable=False, index=True)
    item_type = Column(String(50), default="message")
    item_id = Column(Integer, nullable=True)
    title = Column(String(255), nullable=True)
    topic = Column(String(100), nullable=True)
    urgency = Column(String(20), default="routine")  # urgent | high | routine | low
    priority = Column(String(20), default="routine")
    status = Column(String(50), default="pending", index=True)

    assigned_to = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_at = Column(DateTime, nullable=True)
    first_viewed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    time_to_first_view_minutes = Column(Integer, nullable=True)
    time_to_completion_minutes = Column(Integer, nullable=True)
    requires_md_review = Column(Boolean, default=False)
    due_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    details = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    queue = relationship("WorkQueue", back_populates="items")


class EveningLoadMetric(Base):
    __tablename__ = "evening_load_metrics"
    __table_args__ = (UniqueConstraint("user_id", "metric_date", name="uq_evening_load_user_date"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id", ondelete="SET NULL"), nullable=True)
    metric_date = Column(Date, nullable=False)
    after_hours_minutes = Column(Integer, default=0)
    inbox_time_minutes = Column(Integer, default=0)
    documentation_time_minutes = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
