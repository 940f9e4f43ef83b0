"""Customer-side signing gate.

A contract's fillable fields and its signature form are only available to a
caller session that has proven knowledge of the one-time verification code.
Verification state lives in a VerificationContext keyed by (session, token);
it is never persisted with the contract.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tripsign.exceptions import (
    NotFoundException,
    PipelineException,
    StateConflictException,
    ValidationException,
    VerificationFailedException,
)
from tripsign.models.contract import Contract, ContractStatus
from tripsign.schemas.contract import AuditInfo, ContractSnapshot
from tripsign.services import audit
from tripsign.services.audit import AuditSink, LoggingAuditSink, safe_record
from tripsign.services.contract_lifecycle import ContractLifecycle
from tripsign.services.document_assembly import DocumentAssembler
from tripsign.services.stores import BinaryStore, ContractStore
from tripsign.services.variable_renderer import (
    is_data_image,
    merge_variable_values,
    render_final,
    render_interactive_preview,
)
from tripsign.utils.datetime import utc_now
from tripsign.utils.security import verify_verification_code

logger = logging.getLogger("tripsign.signing")

IN_PERSON_CODE_LABEL = "IN-PERSON"


@dataclass
class VerificationRecord:
    verified_at: datetime
    code: Optional[str] = None
    verified_by: Optional[str] = None


class VerificationStore(ABC):
    @abstractmethod
    def get(self, session_id: str, token: str) -> Optional[VerificationRecord]:
        ...

    @abstractmethod
    def set(self, session_id: str, token: str, record: VerificationRecord) -> None:
        ...

    @abstractmethod
    def clear(self, session_id: str, token: str) -> None:
        ...


class InMemoryVerificationStore(VerificationStore):
    """Process-local store; use a shared cache implementation across workers."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], VerificationRecord] = {}
        self._lock = threading.Lock()

    def get(self, session_id, token):
        with self._lock:
            return self._records.get((session_id, token))

    def set(self, session_id, token, record):
        with self._lock:
            self._records[(session_id, token)] = record

    def clear(self, session_id, token):
        with self._lock:
            self._records.pop((session_id, token), None)


@dataclass
class VerificationContext:
    session_id: str
    store: VerificationStore = field(default_factory=InMemoryVerificationStore)

    def record(self, token: str) -> Optional[VerificationRecord]:
        return self.store.get(self.session_id, token)

    def is_verified(self, token: str) -> bool:
        return self.record(token) is not None

    def mark_verified(self, token: str, code: Optional[str] = None, verified_by: Optional[str] = None) -> None:
        self.store.set(self.session_id, token, VerificationRecord(utc_now(), code, verified_by))

    def clear(self, token: str) -> None:
        self.store.clear(self.session_id, token)


@dataclass
class SigningView:
    contract: Contract
    markup: str
    interactive: bool

    @property
    def can_sign(self) -> bool:
        return self.interactive


class SigningGate:
    def __init__(
        self,
        db: Session,
        lifecycle: Optional[ContractLifecycle] = None,
        assembler: Optional[DocumentAssembler] = None,
        contract_store: Optional[ContractStore] = None,
        binary_store: Optional[BinaryStore] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.db = db
        self.contracts = contract_store or ContractStore(db)
        self.binaries = binary_store or BinaryStore(db)
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.lifecycle = lifecycle or ContractLifecycle(
            db, contract_store=self.contracts, audit_sink=self.audit_sink
        )
        self.assembler = assembler or DocumentAssembler(self.binaries)

    def _by_token(self, token: str) -> Contract:
        contract = self.contracts.find_by_token(token)
        if not contract:
            raise NotFoundException("Signing link is invalid")
        return contract

    def resolve_short_code(self, code: str) -> str:
        contract = self.contracts.find_by_short_code((code or "").strip())
        if not contract:
            raise NotFoundException("Short link not found")
        return contract.signing_token

    def request_verification(
        self,
        context: VerificationContext,
        token: str,
        code: str,
        origin_ip: Optional[str] = None,
    ) -> bool:
        contract = self._by_token(token)
        if context.is_verified(token):
            return True

        if not verify_verification_code(code, contract.verification_code_hash):
            logger.warning(f"Verification failed for contract {contract.id} from {origin_ip}")
            safe_record(
                self.audit_sink, None, audit.VERIFICATION_FAILED, contract.id,
                {"session_id": context.session_id}, origin_ip,
            )
            raise VerificationFailedException("Verification code is incorrect")

        context.mark_verified(token, code=code.strip())
        safe_record(
            self.audit_sink, None, audit.VERIFY_CONTRACT, contract.id,
            {"session_id": context.session_id}, origin_ip,
        )
        return True

    def mark_verified_in_person(
        self,
        context: VerificationContext,
        token: str,
        staff_user_id: str,
        origin_ip: Optional[str] = None,
    ) -> None:
        """Face-to-face signing: staff vouch for the customer on this session."""
        contract = self._by_token(token)
        if contract.status_enum != ContractStatus.PENDING_SIGNATURE:
            raise StateConflictException(contract.status, ContractStatus.PENDING_SIGNATURE.value)
        context.mark_verified(token, verified_by=staff_user_id)
        logger.info(f"Contract {contract.id} verified in person by {staff_user_id}")
        safe_record(
            self.audit_sink, staff_user_id, audit.FACE_TO_FACE_VERIFY, contract.id,
            {"session_id": context.session_id}, origin_ip,
        )

    def signing_view(self, context: VerificationContext, token: str) -> SigningView:
        """Interactive form for a verified session on a signable contract;
        the read-only final render otherwise."""
        contract = self._by_token(token)
        template = contract.template
        interactive = (
            contract.status_enum == ContractStatus.PENDING_SIGNATURE and context.is_verified(token)
        )
        if interactive:
            markup = render_interactive_preview(template.content, contract.variable_values, template.definitions)
        else:
            markup = render_final(
                template.content,
                contract.variable_values,
                template.definitions,
                wrap_bold=True,
                omit_signature=True,
            )
        return SigningView(contract=contract, markup=markup, interactive=interactive)

    def document_pdf(self, token: str) -> bytes:
        """The stored signed artifact, or a freshly rendered protected preview."""
        contract = self._by_token(token)
        if contract.signature_artifact_id:
            data = self.binaries.get(contract.signature_artifact_id)
            if data:
                return data
            logger.warning(f"Signed artifact for contract {contract.id} is missing; rendering preview")
        return self.assembler.render_preview_pdf(ContractSnapshot.from_contract(contract))

    def submit_signature(
        self,
        context: VerificationContext,
        token: str,
        signature_data: Optional[str],
        customer_values: Optional[Mapping[str, Any]] = None,
        *,
        agreed_terms: bool,
        origin_ip: Optional[str] = None,
    ) -> Contract:
        contract = self._by_token(token)
        record = context.record(token)
        if record is None:
            raise VerificationFailedException("Verification is required before signing")
        if contract.status_enum != ContractStatus.PENDING_SIGNATURE:
            raise StateConflictException(contract.status, ContractStatus.PENDING_SIGNATURE.value)
        if not agreed_terms:
            raise ValidationException("Terms must be accepted before signing")
        if not signature_data or not is_data_image(signature_data):
            raise ValidationException("A signature image is required")

        definitions = contract.template.definitions
        fillable = {d.key for d in definitions if d.is_customer_fillable}
        submitted = dict(customer_values or {})
        ignored = sorted(k for k in submitted if k not in fillable)
        if ignored:
            logger.warning(f"Ignoring non-fillable keys {ignored} submitted for contract {contract.id}")
        merged = merge_variable_values(
            contract.variable_values,
            {k: v for k, v in submitted.items() if k in fillable},
            definitions,
        )

        signed_at = utc_now()
        snapshot = ContractSnapshot.from_contract(
            contract, merged, status=ContractStatus.SIGNED.value, signed_at=signed_at
        )
        audit_info = AuditInfo(
            document_id=contract.signing_token,
            signer_name=contract.client_name,
            signed_at=signed_at,
            origin_ip=origin_ip,
            verification_code=record.code or IN_PERSON_CODE_LABEL,
        )
        pdf_bytes = self.assembler.assemble(snapshot, signature_data, audit_info)

        try:
            artifact_id = self.binaries.save(pdf_bytes, "application/pdf")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PipelineException("persist", e) from e
        signed = self.lifecycle.complete_signing(
            contract.id, artifact_id, merged, signed_at=signed_at, origin_ip=origin_ip
        )

        context.clear(token)
        safe_record(
            self.audit_sink, None, audit.SIGN_CONTRACT, contract.id,
            {"artifact_id": artifact_id, "verified_by": record.verified_by}, origin_ip,
        )
        return signed
