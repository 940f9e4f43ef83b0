from sqlalchemy import Column, String, Integer, DateTime, LargeBinary
from tripsign.db import Base
from datetime import datetime, UTC
import uuid


class StoredFile(Base):
    __tablename__ = 'stored_files'
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    mime_type = Column(String(255), nullable=False)
    data = Column(LargeBinary, nullable=False)
    size = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False)
