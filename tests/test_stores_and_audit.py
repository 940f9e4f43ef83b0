import logging

import pytest

from tripsign.models.audit_log import AuditLog
from tripsign.models.contract import ContractStatus
from tripsign.services import audit
from tripsign.services.audit import AuditSink, DatabaseAuditSink, LoggingAuditSink
from tripsign.services.pdf_signing import CredentialProvider
from tripsign.services.signing_gate import VerificationStore
from tripsign.services.stores import BinaryStore, ContractStore, TemplateStore

from conftest import TestingSessionLocal


def test_binary_store_round_trip(db_session):
    store = BinaryStore(db_session)
    file_id = store.save(b"%PDF-1.4 data", "application/pdf")
    db_session.commit()
    assert store.get(file_id) == b"%PDF-1.4 data"
    assert store.get("missing") is None
    assert store.get("") is None


def test_list_active_templates(make_template, db_session):
    make_template(name="Zeta Tour")
    make_template(name="Alpha Tour")
    make_template(name="Retired Tour", is_active=False)
    names = [t.name for t in TemplateStore(db_session).list_active_templates()]
    assert names == ["Alpha Tour", "Zeta Tour"]


def test_contract_store_lookup_and_cas(lifecycle, make_template, db_session):
    contract = lifecycle.create(make_template(requires_approval=False).id, "agent", "Amy").contract
    store = ContractStore(db_session)

    assert store.find_by_token(contract.signing_token).id == contract.id
    assert store.find_by_short_code(contract.short_link_code).id == contract.id
    assert store.find_by_token("") is None
    assert store.token_exists(contract.signing_token)
    assert not store.short_code_exists("00000000")

    assert not store.update_status(contract.id, ContractStatus.DRAFT, ContractStatus.CANCELLED)
    assert store.current_status(contract.id) == "PENDING_SIGNATURE"
    assert store.update_status(contract.id, ContractStatus.PENDING_SIGNATURE, ContractStatus.CANCELLED)
    assert store.find_by_id(contract.id).status == "CANCELLED"
    assert not store.update_variable_values(contract.id, ContractStatus.PENDING_SIGNATURE, {"x": 1})


def test_logging_sink_emits_single_line(caplog):
    with caplog.at_level(logging.INFO, logger="tripsign.audit"):
        LoggingAuditSink().record("agent", audit.APPROVE_CONTRACT, "c-1", {"note": "ok"}, "10.0.0.1")
    lines = [r.getMessage() for r in caplog.records if r.name == "tripsign.audit"]
    assert len(lines) == 1
    assert lines[0].startswith("AUDIT ")
    assert "action='APPROVE_CONTRACT'" in lines[0]
    assert "origin='10.0.0.1'" in lines[0]


def test_database_sink_persists_row(db_session):
    DatabaseAuditSink(TestingSessionLocal).record(None, audit.SIGN_CONTRACT, "c-9", {"artifact_id": "f-1"}, "203.0.113.7")
    row = db_session.query(AuditLog).one()
    assert row.action == "SIGN_CONTRACT"
    assert row.actor_id is None
    assert row.resource_id == "c-9"
    assert row.details == {"artifact_id": "f-1"}
    assert row.ip_address == "203.0.113.7"


def test_database_sink_swallows_failures(caplog):
    def broken_factory():
        raise RuntimeError("database unreachable")

    with caplog.at_level(logging.ERROR, logger="tripsign.audit"):
        DatabaseAuditSink(broken_factory).record("agent", audit.CANCEL_CONTRACT, "c-2")
    assert any("Failed to persist audit event" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize("interface", [AuditSink, CredentialProvider, VerificationStore])
def test_interfaces_must_be_implemented(interface):
    with pytest.raises(TypeError):
        interface()


def test_partial_verification_store_is_rejected():
    class GetOnly(VerificationStore):
        def get(self, session_id, token):
            return None

    with pytest.raises(TypeError):
        GetOnly()
