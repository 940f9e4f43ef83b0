"""Contract state machine.

DRAFT ──send──▶ PENDING_APPROVAL ──approve──▶ PENDING_SIGNATURE ──sign──▶ SIGNED
  │                 │    ▲                          │
  │               reject │ resubmit               cancel
  │                 ▼    │                          ▼
  └────cancel───▶ CANCELLED   REJECTED          CANCELLED

Every status write is a compare-and-set on the status the caller read, so two
racing transitions cannot both win; the loser gets StateConflictException and
its session is rolled back. Each public operation commits its own unit of work.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripsign.exceptions import (
    ContractError,
    NotFoundException,
    StateConflictException,
    UnauthorizedException,
    ValidationException,
)
from tripsign.models.contract import Contract, ContractStatus
from tripsign.schemas.contract import ContractCreate, SigningMaterial
from tripsign.services import audit
from tripsign.services.audit import AuditSink, LoggingAuditSink, safe_record
from tripsign.services.stores import ContractStore, TemplateStore
from tripsign.services.variable_renderer import merge_variable_values, normalize_variable_values
from tripsign.utils.datetime import utc_now
from tripsign.utils.security import (
    generate_short_code,
    generate_signing_token,
    generate_verification_code,
    hash_verification_code,
)

logger = logging.getLogger("tripsign.lifecycle")

MAX_ISSUE_ATTEMPTS = 5

EDITABLE_STATES = (
    ContractStatus.DRAFT,
    ContractStatus.PENDING_APPROVAL,
    ContractStatus.PENDING_SIGNATURE,
)
CANCELLABLE_STATES = (ContractStatus.DRAFT, ContractStatus.PENDING_SIGNATURE)


@dataclass
class IssuedContract:
    """A contract plus, when it just became signable, its one-time material."""
    contract: Contract
    signing_material: Optional[SigningMaterial] = None

    @property
    def status(self) -> str:
        return self.contract.status


def _names(states: Iterable[ContractStatus]) -> Tuple[str, ...]:
    return tuple(s.value for s in states)


class ContractLifecycle:
    def __init__(
        self,
        db: Session,
        template_store: Optional[TemplateStore] = None,
        contract_store: Optional[ContractStore] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.db = db
        self.templates = template_store or TemplateStore(db)
        self.contracts = contract_store or ContractStore(db)
        self.audit_sink = audit_sink or LoggingAuditSink()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def get(self, contract_id: str) -> Contract:
        contract = self.contracts.find_by_id(contract_id)
        if not contract:
            raise NotFoundException(f"Contract {contract_id} not found")
        return contract

    def _require_creator(self, contract: Contract, user_id: str, action: str) -> None:
        if not user_id or contract.created_by != user_id:
            raise UnauthorizedException(f"Only the creator of contract {contract.id} may {action} it")

    def _require_state(self, contract: Contract, allowed: Iterable[ContractStatus]) -> ContractStatus:
        allowed = tuple(allowed)
        current = contract.status_enum
        if current not in allowed:
            raise StateConflictException(current.value, _names(allowed))
        return current

    def _cas(
        self,
        contract: Contract,
        expected: ContractStatus,
        new_status: ContractStatus,
        **fields: Any,
    ) -> None:
        if not self.contracts.update_status(contract.id, expected, new_status, **fields):
            self.db.rollback()
            current = self.contracts.current_status(contract.id)
            logger.warning(
                f"Lost transition race on contract {contract.id}: expected {expected.value}, found {current}"
            )
            raise StateConflictException(current, (expected.value,))

    def _unique(self, generate, exists) -> str:
        for _ in range(MAX_ISSUE_ATTEMPTS):
            candidate = generate()
            if not exists(candidate):
                return candidate
            logger.warning("Signing secret collision; regenerating")
        raise ContractError("Could not allocate a unique signing secret")

    def _issue_fields(self, contract: Optional[Contract]) -> Tuple[Dict[str, Any], str]:
        """Token, short code and code hash for a contract entering PENDING_SIGNATURE.

        Token and short code are immutable once assigned and are reused.
        """
        token = getattr(contract, "signing_token", None) or self._unique(
            generate_signing_token, self.contracts.token_exists
        )
        short_code = getattr(contract, "short_link_code", None) or self._unique(
            generate_short_code, self.contracts.short_code_exists
        )
        code = generate_verification_code()
        fields = {
            "signing_token": token,
            "short_link_code": short_code,
            "verification_code_hash": hash_verification_code(code),
        }
        return fields, code

    @staticmethod
    def _material(contract_id: str, fields: Mapping[str, Any], code: str) -> SigningMaterial:
        return SigningMaterial(
            contract_id=contract_id,
            signing_token=fields["signing_token"],
            short_link_code=fields["short_link_code"],
            verification_code=code,
        )

    def _normalize(self, values: Any, template) -> Dict[str, Any]:
        try:
            return normalize_variable_values(values or {}, template.definitions)
        except ValueError as e:
            raise ValidationException(f"Invalid variable values: {e}") from e

    def _merge(self, contract: Contract, values: Any) -> Dict[str, Any]:
        try:
            return merge_variable_values(contract.variable_values, values or {}, contract.template.definitions)
        except ValueError as e:
            raise ValidationException(f"Invalid variable values: {e}") from e

    @staticmethod
    def _clean_client_name(client_name: Optional[str]) -> Optional[str]:
        if client_name is None:
            return None
        cleaned = client_name.strip()
        if not cleaned:
            raise ValidationException("client_name must not be blank")
        return cleaned

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def create(
        self,
        template_id: str,
        created_by: str,
        client_name: str,
        variable_values: Optional[Mapping[str, Any]] = None,
        *,
        as_draft: bool = False,
    ) -> IssuedContract:
        try:
            data = ContractCreate(
                template_id=template_id,
                client_name=client_name or "",
                variable_values=dict(variable_values or {}),
            )
        except ValidationError as e:
            raise ValidationException(f"Invalid contract: {e.errors()[0]['msg']}") from e

        template = self.templates.get_template(data.template_id)
        if not template:
            raise NotFoundException(f"Template {data.template_id} not found")
        if not template.is_active:
            raise ValidationException(f"Template {template.id} is not active")
        values = self._normalize(data.variable_values, template)

        if as_draft:
            status = ContractStatus.DRAFT
        elif template.requires_approval:
            status = ContractStatus.PENDING_APPROVAL
        else:
            status = ContractStatus.PENDING_SIGNATURE

        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            material = None
            contract = Contract(
                template_id=template.id,
                created_by=created_by,
                client_name=data.client_name,
                variable_values=values,
                status=status.value,
            )
            if status == ContractStatus.PENDING_SIGNATURE:
                fields, code = self._issue_fields(None)
                for name, value in fields.items():
                    setattr(contract, name, value)
            try:
                self.contracts.create_contract(contract)
                if status == ContractStatus.PENDING_SIGNATURE:
                    material = self._material(contract.id, fields, code)
                self.db.commit()
                break
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"Unique constraint hit creating contract (attempt {attempt}); retrying")
        else:
            raise ContractError("Could not allocate a unique signing secret")

        self.db.refresh(contract)
        logger.info(f"Contract {contract.id} created by {created_by} in {status.value}")
        safe_record(
            self.audit_sink, created_by, audit.CREATE_CONTRACT, contract.id,
            {"template_id": template.id, "status": status.value},
        )
        return IssuedContract(contract, material)

    def _enter_signable(
        self,
        contract_id: str,
        expected: ContractStatus,
        **extra: Any,
    ) -> IssuedContract:
        """CAS ``expected`` -> PENDING_SIGNATURE with freshly issued material."""
        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            contract = self.get(contract_id)
            self._require_state(contract, (expected,))
            fields, code = self._issue_fields(contract)
            try:
                self._cas(contract, expected, ContractStatus.PENDING_SIGNATURE, **fields, **extra)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"Unique constraint hit issuing material for {contract_id} (attempt {attempt})")
                continue
            self.db.refresh(contract)
            return IssuedContract(contract, self._material(contract.id, fields, code))
        raise ContractError("Could not allocate a unique signing secret")

    def send_draft(self, contract_id: str, requesting_user_id: str) -> IssuedContract:
        """Move a DRAFT into the flow its template prescribes."""
        contract = self.get(contract_id)
        self._require_creator(contract, requesting_user_id, "send")
        self._require_state(contract, (ContractStatus.DRAFT,))

        if contract.template.requires_approval:
            self._cas(contract, ContractStatus.DRAFT, ContractStatus.PENDING_APPROVAL)
            self.db.commit()
            self.db.refresh(contract)
            result = IssuedContract(contract)
        else:
            result = self._enter_signable(contract_id, ContractStatus.DRAFT)

        logger.info(f"Contract {contract_id} sent by {requesting_user_id} -> {result.status}")
        safe_record(
            self.audit_sink, requesting_user_id, audit.SEND_CONTRACT, contract_id, {"status": result.status}
        )
        return result

    def edit(
        self,
        contract_id: str,
        requesting_user_id: str,
        client_name: Optional[str] = None,
        variable_values: Optional[Mapping[str, Any]] = None,
    ) -> Contract:
        """Creator-only field edit before signature; status is unchanged."""
        contract = self.get(contract_id)
        self._require_creator(contract, requesting_user_id, "edit")
        current = self._require_state(contract, EDITABLE_STATES)
        name = self._clean_client_name(client_name)
        merged = self._merge(contract, variable_values)

        if not self.contracts.update_variable_values(contract.id, current, merged, client_name=name):
            self.db.rollback()
            raise StateConflictException(self.contracts.current_status(contract_id), (current.value,))
        self.db.commit()
        self.db.refresh(contract)
        safe_record(
            self.audit_sink, requesting_user_id, audit.EDIT_CONTRACT, contract_id,
            {"keys": sorted((variable_values or {}).keys())},
        )
        return contract

    def approve(self, contract_id: str, reviewer_id: str) -> IssuedContract:
        result = self._enter_signable(
            contract_id,
            ContractStatus.PENDING_APPROVAL,
            reviewed_by=reviewer_id,
            reviewed_at=utc_now(),
            rejection_reason=None,
        )
        logger.info(f"Contract {contract_id} approved by {reviewer_id}")
        safe_record(self.audit_sink, reviewer_id, audit.APPROVE_CONTRACT, contract_id)
        return result

    def reject(self, contract_id: str, reviewer_id: str, reason: str) -> Contract:
        contract = self.get(contract_id)
        self._require_state(contract, (ContractStatus.PENDING_APPROVAL,))
        reason = (reason or "").strip()
        if not reason:
            raise ValidationException("A rejection reason is required")

        self._cas(
            contract,
            ContractStatus.PENDING_APPROVAL,
            ContractStatus.REJECTED,
            rejection_reason=reason,
            reviewed_by=reviewer_id,
            reviewed_at=utc_now(),
        )
        self.db.commit()
        self.db.refresh(contract)
        logger.info(f"Contract {contract_id} rejected by {reviewer_id}")
        safe_record(self.audit_sink, reviewer_id, audit.REJECT_CONTRACT, contract_id, {"reason": reason})
        return contract

    def resubmit(
        self,
        contract_id: str,
        requesting_user_id: str,
        client_name: Optional[str] = None,
        variable_values: Optional[Mapping[str, Any]] = None,
    ) -> Contract:
        """Edit a REJECTED contract and send it back for approval."""
        contract = self.get(contract_id)
        self._require_creator(contract, requesting_user_id, "resubmit")
        self._require_state(contract, (ContractStatus.REJECTED,))
        fields: Dict[str, Any] = {
            "variable_values": self._merge(contract, variable_values),
            "rejection_reason": None,
        }
        name = self._clean_client_name(client_name)
        if name is not None:
            fields["client_name"] = name

        self._cas(contract, ContractStatus.REJECTED, ContractStatus.PENDING_APPROVAL, **fields)
        self.db.commit()
        self.db.refresh(contract)
        logger.info(f"Contract {contract_id} resubmitted by {requesting_user_id}")
        safe_record(self.audit_sink, requesting_user_id, audit.RESUBMIT_CONTRACT, contract_id)
        return contract

    def cancel(self, contract_id: str, requesting_user_id: str) -> Contract:
        contract = self.get(contract_id)
        self._require_creator(contract, requesting_user_id, "cancel")
        current = self._require_state(contract, CANCELLABLE_STATES)

        self._cas(contract, current, ContractStatus.CANCELLED)
        self.db.commit()
        self.db.refresh(contract)
        logger.info(f"Contract {contract_id} cancelled by {requesting_user_id}")
        safe_record(self.audit_sink, requesting_user_id, audit.CANCEL_CONTRACT, contract_id)
        return contract

    def complete_signing(
        self,
        contract_id: str,
        artifact_id: str,
        variable_values: Mapping[str, Any],
        *,
        signed_at: Optional[datetime] = None,
        origin_ip: Optional[str] = None,
    ) -> Contract:
        """PENDING_SIGNATURE -> SIGNED; commits together with anything pending
        in the session (the stored artifact)."""
        contract = self.get(contract_id)
        self._require_state(contract, (ContractStatus.PENDING_SIGNATURE,))
        ok = self.contracts.attach_signature_artifact(
            contract.id,
            artifact_id,
            variable_values=dict(variable_values),
            signed_at=signed_at or utc_now(),
            signature_ip=origin_ip,
        )
        if not ok:
            self.db.rollback()
            raise StateConflictException(
                self.contracts.current_status(contract_id), (ContractStatus.PENDING_SIGNATURE.value,)
            )
        self.db.commit()
        self.db.refresh(contract)
        logger.info(f"Contract {contract_id} signed; artifact {artifact_id}")
        return contract
