from sqlalchemy import Column, Integer, String, DateTime, JSON
from tripsign.db import Base
from datetime import datetime, UTC


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    id = Column(Integer, primary_key=True, autoincrement=True)
    # Null for unauthenticated actors (customers on the signing page)
    actor_id = Column(String, nullable=True)
    action = Column(String(50), nullable=False, index=True)
    resource_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False)
