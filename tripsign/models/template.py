from sqlalchemy import Column, String, Boolean, DateTime, Text, ForeignKey, JSON
from tripsign.db import Base
from datetime import datetime, UTC
import uuid


class ContractTemplate(Base):
    __tablename__ = 'contract_templates'
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    # Ordered list of {key, label, type, isCustomerFillable}
    variables = Column(JSON, nullable=False, default=list)
    content = Column(Text, nullable=False, default='')
    logo_url = Column(String, nullable=True)
    master_document_id = Column(String, ForeignKey('stored_files.id'), nullable=True)
    requires_approval = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False)

    @property
    def definitions(self):
        """Declared variables parsed into VariableDefinition objects."""
        from tripsign.schemas.template import parse_definitions
        return parse_definitions(self.variables)
