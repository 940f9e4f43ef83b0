from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from tripsign.schemas.template import VariableDefinition


class ContractCreate(BaseModel):
    template_id: str
    client_name: str
    variable_values: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("client_name")
    @classmethod
    def client_name_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("client_name is required")
        return v


class ContractOut(BaseModel):
    id: str
    template_id: str
    created_by: str
    client_name: str
    variable_values: Dict[str, Any]
    status: str
    signing_token: Optional[str]
    short_link_code: Optional[str]
    rejection_reason: Optional[str]
    signature_artifact_id: Optional[str]
    created_at: datetime
    signed_at: Optional[datetime]

    model_config = {
        'from_attributes': True
    }


class SigningMaterial(BaseModel):
    """Returned once when a contract becomes signable.

    ``verification_code`` is the only plaintext copy of the one-time code;
    only its hash is persisted.
    """
    contract_id: str
    signing_token: str
    short_link_code: str
    verification_code: str


@dataclass(frozen=True)
class ContractSnapshot:
    """Everything the assembly pipeline may read about a contract."""
    contract_id: str
    template_name: str
    template_content: str
    definitions: List[VariableDefinition]
    variable_values: Dict[str, Any]
    client_name: str
    signing_token: str
    master_document_id: Optional[str] = None
    status: Optional[str] = None
    signed_at: Optional[datetime] = None
    logo_url: Optional[str] = None

    @property
    def document_password(self) -> str:
        """Open password for generated PDFs: last six characters of the signing token."""
        return (self.signing_token or self.contract_id or "000000")[-6:]

    @classmethod
    def from_contract(
        cls, contract, variable_values: Optional[Dict[str, Any]] = None, **overrides: Any
    ) -> "ContractSnapshot":
        template = contract.template
        snapshot = cls(
            contract_id=contract.id,
            template_name=template.name,
            template_content=template.content or "",
            definitions=template.definitions,
            variable_values=dict(contract.variable_values if variable_values is None else variable_values),
            client_name=contract.client_name,
            signing_token=contract.signing_token or contract.id,
            master_document_id=template.master_document_id,
            status=contract.status,
            signed_at=contract.signed_at,
            logo_url=template.logo_url,
        )
        return replace(snapshot, **overrides) if overrides else snapshot


@dataclass(frozen=True)
class AuditInfo:
    document_id: str
    signer_name: str
    signed_at: datetime
    origin_ip: Optional[str]
    verification_code: Optional[str]
