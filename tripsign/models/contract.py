from sqlalchemy import Column, String, DateTime, Text, ForeignKey, JSON
from sqlalchemy.orm import relationship
from tripsign.db import Base
from datetime import datetime, UTC
import enum
import uuid


class ContractStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    REJECTED = "REJECTED"
    SIGNED = "SIGNED"
    CANCELLED = "CANCELLED"


class Contract(Base):
    __tablename__ = 'contracts'
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    template_id = Column(String, ForeignKey('contract_templates.id'), nullable=False, index=True)
    created_by = Column(String, nullable=False, index=True)
    client_name = Column(String(255), nullable=False)
    variable_values = Column(JSON, nullable=False, default=dict)
    status = Column(String(32), nullable=False, default=ContractStatus.DRAFT.value, index=True)
    signing_token = Column(String(128), unique=True, nullable=True)
    short_link_code = Column(String(50), unique=True, nullable=True)
    verification_code_hash = Column(String(255), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    signature_artifact_id = Column(String, ForeignKey('stored_files.id'), nullable=True)
    signature_ip = Column(String(64), nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False)

    template = relationship("ContractTemplate", lazy="joined")

    @property
    def status_enum(self) -> ContractStatus:
        return ContractStatus(self.status)
