"""SQLAlchemy-backed stores the core reads and writes through.

All stores share the caller's Session; nothing here commits. The workflow
that owns the unit of work (lifecycle / signing gate) commits or rolls back.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from tripsign.models.contract import Contract, ContractStatus
from tripsign.models.stored_file import StoredFile
from tripsign.models.template import ContractTemplate
from tripsign.schemas.template import TemplateCreate
from tripsign.utils.datetime import utc_now

logger = logging.getLogger("tripsign.stores")


class TemplateStore:
    def __init__(self, db: Session):
        self.db = db

    def get_template(self, template_id: str) -> Optional[ContractTemplate]:
        return self.db.query(ContractTemplate).filter_by(id=template_id).first()

    def list_active_templates(self) -> List[ContractTemplate]:
        return (
            self.db.query(ContractTemplate)
            .filter_by(is_active=True)
            .order_by(ContractTemplate.name.asc())
            .all()
        )

    def add(self, data: TemplateCreate) -> ContractTemplate:
        tpl = ContractTemplate(
            name=data.name,
            content=data.content,
            variables=data.variables_json(),
            logo_url=data.logo_url,
            master_document_id=data.master_document_id,
            requires_approval=data.requires_approval,
            is_active=data.is_active,
        )
        self.db.add(tpl)
        self.db.flush()
        return tpl


class ContractStore:
    def __init__(self, db: Session):
        self.db = db

    def create_contract(self, contract: Contract) -> Contract:
        self.db.add(contract)
        self.db.flush()
        return contract

    def find_by_id(self, contract_id: str) -> Optional[Contract]:
        return self.db.query(Contract).filter_by(id=contract_id).first()

    def find_by_token(self, token: str) -> Optional[Contract]:
        if not token:
            return None
        return self.db.query(Contract).filter_by(signing_token=token).first()

    def find_by_short_code(self, code: str) -> Optional[Contract]:
        if not code:
            return None
        return self.db.query(Contract).filter_by(short_link_code=code).first()

    def token_exists(self, token: str) -> bool:
        return self.db.query(Contract.id).filter_by(signing_token=token).first() is not None

    def short_code_exists(self, code: str) -> bool:
        return self.db.query(Contract.id).filter_by(short_link_code=code).first() is not None

    def update_status(
        self,
        contract_id: str,
        expected: ContractStatus,
        new_status: ContractStatus,
        **fields: Any,
    ) -> bool:
        """Compare-and-set on status; False when the row was not in ``expected``."""
        values: Dict[str, Any] = {"status": new_status.value, "updated_at": utc_now(), **fields}
        count = (
            self.db.query(Contract)
            .filter(Contract.id == contract_id, Contract.status == expected.value)
            .update(values, synchronize_session=False)
        )
        self.db.flush()
        if count:
            self._expire(contract_id)
        return count == 1

    def update_variable_values(
        self,
        contract_id: str,
        expected: ContractStatus,
        variable_values: Dict[str, Any],
        client_name: Optional[str] = None,
    ) -> bool:
        """Field edit guarded by the status the caller read."""
        values: Dict[str, Any] = {"variable_values": variable_values, "updated_at": utc_now()}
        if client_name is not None:
            values["client_name"] = client_name
        count = (
            self.db.query(Contract)
            .filter(Contract.id == contract_id, Contract.status == expected.value)
            .update(values, synchronize_session=False)
        )
        self.db.flush()
        if count:
            self._expire(contract_id)
        return count == 1

    def attach_signature_artifact(self, contract_id: str, artifact_id: str, **fields: Any) -> bool:
        """PENDING_SIGNATURE -> SIGNED with the artifact reference, atomically."""
        return self.update_status(
            contract_id,
            ContractStatus.PENDING_SIGNATURE,
            ContractStatus.SIGNED,
            signature_artifact_id=artifact_id,
            **fields,
        )

    def current_status(self, contract_id: str) -> Optional[str]:
        row = self.db.query(Contract.status).filter_by(id=contract_id).first()
        return row[0] if row else None

    def _expire(self, contract_id: str) -> None:
        # Bulk UPDATE bypasses the identity map; reload on next access.
        cached = self.db.get(Contract, contract_id)
        if cached is not None:
            self.db.expire(cached)


class BinaryStore:
    def __init__(self, db: Session):
        self.db = db

    def save(self, data: bytes, mime_type: str) -> str:
        file_id = str(uuid.uuid4())
        self.db.add(StoredFile(id=file_id, mime_type=mime_type, data=data, size=len(data)))
        self.db.flush()
        logger.info(f"Stored {mime_type} blob {file_id} ({len(data)} bytes)")
        return file_id

    def get(self, file_id: str) -> Optional[bytes]:
        if not file_id:
            return None
        row = self.db.query(StoredFile).filter_by(id=file_id).first()
        return bytes(row.data) if row else None
