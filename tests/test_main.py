from sqlalchemy import text

from tripsign.main import build_services, startup
from tripsign.services.audit import MemoryAuditSink
from tripsign.services.pdf_signing import StaticCredentialProvider


def test_startup_reports_database_health():
    health = startup(run_migrations=False)
    assert health == {"status": "healthy", "database": "connected"}


def test_build_services_shares_session_and_collaborators(db_session, make_template):
    sink = MemoryAuditSink()
    services = build_services(db_session, audit_sink=sink, credential_provider=StaticCredentialProvider(None))

    assert services.gate.lifecycle is services.lifecycle
    assert services.gate.assembler is services.assembler
    assert services.lifecycle.contracts is services.contracts
    assert services.assembler.binary_store is services.binaries

    template = make_template(requires_approval=False)
    issued = services.lifecycle.create(template.id, "agent", "Amy")
    assert services.gate.resolve_short_code(issued.contract.short_link_code) == issued.contract.signing_token
    assert sink.actions() == ["CREATE_CONTRACT"]


def test_get_db_yields_and_closes_session():
    from tripsign.db import get_db

    gen = get_db()
    db = next(gen)
    assert db.execute(text("SELECT 1")).scalar() == 1
    gen.close()
