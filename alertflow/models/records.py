# alertflow/models/records.py
from sqlalchemy import Column, String, Integer, Float, Text, DateTime
from datetime import datetime
from .database import Base


class TaskRecord(Base):
    """Persisted analysis task

    `started_at` + `timeout` is the processing deadline used by the timeout sweeper.
    """
    __tablename__ = "analysis_tasks"

    id = Column(String(64), primary_key=True, index=True)
    alert_id = Column(String(64), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    priority = Column(Integer, default=0)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)
    timeout = Column(Float, nullable=False, default=300.0)  # seconds
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class ResultRecord(Base):
    """Persisted analysis result (one per task)"""
    __tablename__ = "analysis_results"

    id = Column(String(64), primary_key=True, index=True)
    task_id = Column(String(64), nullable=False, unique=True, index=True)
    alert_id = Column(String(64), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    confidence_score = Column(Float, default=0.0)
    processing_time = Column(Float, default=0.0)
    result_json = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    recommendations_json = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
