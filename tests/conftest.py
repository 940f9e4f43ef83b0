import base64
import io
import os

# Settings are read at import time; pin the test environment first.
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["PDF_FONT_NAME"] = "Helvetica"
os.environ["SIGNING_CERT_PATH"] = ""
os.environ["SIGNATURE_PLACEHOLDER"] = "signature"
os.environ["VERIFICATION_HASH_ROUNDS"] = "4"

import pytest
from PIL import Image, ImageDraw
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tripsign.db import Base
import tripsign.models  # noqa: F401
from tripsign.schemas.template import TemplateCreate
from tripsign.services.audit import MemoryAuditSink
from tripsign.services.contract_lifecycle import ContractLifecycle
from tripsign.services.document_assembly import DocumentAssembler
from tripsign.services.pdf_signing import StaticCredentialProvider
from tripsign.services.signing_gate import SigningGate
from tripsign.services.stores import BinaryStore, ContractStore, TemplateStore

# Use SQLite in-memory for test DB
TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"
# StaticPool so every session (including the audit sink's own) sees the same
# in-memory database.
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_test_db():
    # recreate schema for each test to ensure isolation
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def lifecycle(db_session, audit_sink):
    return ContractLifecycle(db_session, audit_sink=audit_sink)


@pytest.fixture
def assembler(db_session):
    return DocumentAssembler(
        BinaryStore(db_session),
        StaticCredentialProvider(None),
        font_name="Helvetica",
    )


@pytest.fixture
def gate(db_session, lifecycle, assembler, audit_sink):
    return SigningGate(
        db_session,
        lifecycle=lifecycle,
        assembler=assembler,
        contract_store=ContractStore(db_session),
        binary_store=BinaryStore(db_session),
        audit_sink=audit_sink,
    )


TOUR_CONTENT = (
    "<h1>Tour Agreement</h1>"
    "<p>Traveller: {{ traveller }}</p>"
    "<p>Price: {{price}} ({{price_upper}})</p>"
    "<p>Passport: {{passport_no}}</p>"
    "<p>Insurance: {{insurance}}</p>"
    "<p>Signature: {{signature}}</p>"
)

TOUR_VARIABLES = [
    {"key": "traveller", "label": "Traveller", "type": "text"},
    {"key": "price", "label": "Price", "type": "number"},
    {"key": "passport_no", "label": "Passport", "type": "text", "isCustomerFillable": True},
    {"key": "insurance", "label": "Insurance", "type": "checkbox", "isCustomerFillable": True},
]


@pytest.fixture
def make_template(db_session):
    def _make(requires_approval=True, content=TOUR_CONTENT, variables=None, **kwargs):
        data = TemplateCreate(
            name=kwargs.pop("name", "Tour Agreement"),
            content=content,
            variables=TOUR_VARIABLES if variables is None else variables,
            requires_approval=requires_approval,
            **kwargs,
        )
        tpl = TemplateStore(db_session).add(data)
        db_session.commit()
        return tpl
    return _make


@pytest.fixture
def signature_data_url():
    img = Image.new("RGBA", (300, 100), (255, 255, 255, 0))
    draw = ImageDraw.Draw(img)
    draw.line((10, 80, 120, 20, 200, 70, 290, 30), fill=(0, 0, 0, 255), width=4)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()
