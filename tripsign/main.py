"""Process bootstrap and service wiring for the routing layer."""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from tripsign.core.logging_config import setup_logging
from tripsign.core.settings import settings
from tripsign.db import check_database_health
from tripsign.migrations import upgrade_database
from tripsign.services.audit import AuditSink, DatabaseAuditSink
from tripsign.services.contract_lifecycle import ContractLifecycle
from tripsign.services.document_assembly import DocumentAssembler
from tripsign.services.pdf_signing import CredentialProvider, EnvCredentialProvider
from tripsign.services.signing_gate import SigningGate
from tripsign.services.stores import BinaryStore, ContractStore, TemplateStore

logger = setup_logging()


def startup(run_migrations: bool = True) -> dict:
    """Log the effective configuration, migrate the schema and check the database."""
    logger.info("=" * 50)
    logger.info("tripsign contract core starting up")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"SQL Debug: {'enabled' if settings.sql_debug else 'disabled'}")
    signing = "configured" if settings.signing_cert_path else "not configured (unsigned PDFs)"
    logger.info(f"Document signing: {signing}")
    logger.info(f"PDF font: {settings.pdf_font_name}")
    logger.info("=" * 50)

    if run_migrations:
        upgrade_database()
    return check_database_health()


@dataclass
class Services:
    templates: TemplateStore
    contracts: ContractStore
    binaries: BinaryStore
    lifecycle: ContractLifecycle
    gate: SigningGate
    assembler: DocumentAssembler


def build_services(
    db: Session,
    audit_sink: Optional[AuditSink] = None,
    credential_provider: Optional[CredentialProvider] = None,
) -> Services:
    """One set of collaborators bound to a request-scoped session."""
    templates = TemplateStore(db)
    contracts = ContractStore(db)
    binaries = BinaryStore(db)
    sink = audit_sink or DatabaseAuditSink()
    lifecycle = ContractLifecycle(db, templates, contracts, sink)
    assembler = DocumentAssembler(binaries, credential_provider or EnvCredentialProvider())
    gate = SigningGate(db, lifecycle, assembler, contracts, binaries, sink)
    return Services(templates, contracts, binaries, lifecycle, gate, assembler)
