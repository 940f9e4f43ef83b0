import asyncio
import base64
import io
import re
import time
from datetime import datetime, timedelta, UTC

import pytest
from PIL import Image
from pypdf import PdfReader
from pypdf.constants import UserAccessPermissions
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from tripsign.exceptions import DependencyUnavailableException, PipelineException
from tripsign.schemas.contract import AuditInfo, ContractSnapshot
from tripsign.schemas.template import parse_definitions
from tripsign.services.document_assembly import (
    DocumentAssembler,
    encrypt_document,
    merge_documents,
    overlay_signature,
    signature_box,
)
from tripsign.services.pdf_render import markup_to_flowables, render_markup_pdf
from tripsign.services.pdf_signing import EnvCredentialProvider, StaticCredentialProvider
from tripsign.services.stores import BinaryStore

from conftest import TOUR_CONTENT, TOUR_VARIABLES

TOKEN = "ab" * 32


def _snapshot(**overrides):
    data = dict(
        contract_id="c-1",
        template_name="Tour Agreement",
        template_content=TOUR_CONTENT,
        definitions=parse_definitions(TOUR_VARIABLES),
        variable_values={"traveller": "Amy", "price": 12500, "passport_no": "X1234567", "insurance": True},
        client_name="Amy Chen",
        signing_token=TOKEN,
    )
    data.update(overrides)
    return ContractSnapshot(**data)


def _audit(signed_at=None, code="482913"):
    return AuditInfo(
        document_id=TOKEN,
        signer_name="Amy Chen",
        signed_at=signed_at or datetime(2026, 10, 18, 9, 30, 15, tzinfo=UTC),
        origin_ip="203.0.113.7",
        verification_code=code,
    )


def _reader(pdf_bytes, password=TOKEN[-6:]):
    reader = PdfReader(io.BytesIO(pdf_bytes))
    if reader.is_encrypted:
        assert reader.decrypt(password)
    return reader


def _texts(pdf_bytes):
    return [page.extract_text() for page in _reader(pdf_bytes).pages]


def _master_pdf(pages=2):
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for n in range(1, pages + 1):
        c.setFont("Helvetica", 14)
        c.drawString(72, 700, f"MASTER PAGE {n}")
        c.showPage()
    c.save()
    return buf.getvalue()


def _has_image(page):
    resources = page["/Resources"].get_object()
    if "/XObject" not in resources:
        return False
    xobjects = resources["/XObject"].get_object()
    return any(xobjects[name].get_object().get("/Subtype") == "/Image" for name in xobjects)


def test_assemble_unsigned_document(assembler, signature_data_url):
    pdf = assembler.assemble(_snapshot(), signature_data_url, _audit())
    texts = _texts(pdf)

    assert len(texts) >= 2
    body = "\n".join(texts[:-1])
    assert "Tour Agreement" in body
    assert "Client: Amy Chen" in body
    assert "Amy" in body and "X1234567" in body and "12500" in body

    audit_page = texts[-1]
    assert "Signature Audit Trail" in audit_page
    assert TOKEN in audit_page
    assert "Amy Chen" in audit_page
    assert "2026-10-18T09:30:15+00:00" in audit_page
    assert "203.0.113.7" in audit_page
    assert "482913" in audit_page


def test_signature_overlay_on_last_body_page(assembler, signature_data_url):
    pdf = assembler.assemble(_snapshot(), signature_data_url, _audit())
    pages = _reader(pdf).pages
    assert _has_image(pages[-2])
    assert not _has_image(pages[-1])


def test_repeated_runs_differ_only_in_timestamp(assembler, signature_data_url):
    first = _texts(assembler.assemble(_snapshot(), signature_data_url, _audit()))
    later = datetime(2026, 10, 19, 1, 2, 3, tzinfo=UTC)
    second = _texts(assembler.assemble(_snapshot(), signature_data_url, _audit(signed_at=later)))

    assert first[:-1] == second[:-1]
    stamp = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\+00:00")
    assert stamp.sub("<ts>", first[-1]) == stamp.sub("<ts>", second[-1])
    assert first[-1] != second[-1]


def test_master_document_pages_come_first(db_session, signature_data_url):
    store = BinaryStore(db_session)
    master_id = store.save(_master_pdf(2), "application/pdf")
    assembler = DocumentAssembler(store, StaticCredentialProvider(None), font_name="Helvetica")

    texts = _texts(assembler.assemble(_snapshot(master_document_id=master_id), signature_data_url, _audit()))
    assert "MASTER PAGE 1" in texts[0]
    assert "MASTER PAGE 2" in texts[1]
    assert "Tour Agreement" in texts[2]
    assert "Signature Audit Trail" in texts[-1]


def test_missing_master_document_is_dependency_error(assembler, signature_data_url):
    with pytest.raises(DependencyUnavailableException):
        assembler.assemble(_snapshot(master_document_id="gone"), signature_data_url, _audit())


def test_corrupt_master_document_is_pipeline_error(db_session, signature_data_url):
    store = BinaryStore(db_session)
    bad_id = store.save(b"not a pdf", "application/pdf")
    assembler = DocumentAssembler(store, StaticCredentialProvider(None), font_name="Helvetica")
    with pytest.raises(PipelineException) as exc:
        assembler.assemble(_snapshot(master_document_id=bad_id), signature_data_url, _audit())
    assert exc.value.step == "merge"


def test_undecodable_signature_is_pipeline_error(assembler):
    with pytest.raises(PipelineException) as exc:
        assembler.assemble(_snapshot(), "data:image/png;base64,aGVsbG8=", _audit())
    assert exc.value.step == "signature_overlay"
    assert exc.value.__cause__ is exc.value.cause


def test_render_preview_pdf_has_no_audit_page(assembler):
    texts = _texts(assembler.render_preview_pdf(_snapshot()))
    assert "Tour Agreement" in texts[0]
    assert not any("Signature Audit Trail" in t for t in texts)


def test_assemble_async(assembler, signature_data_url):
    pdf = asyncio.run(assembler.assemble_async(_snapshot(), signature_data_url, _audit()))
    assert pdf.startswith(b"%PDF")


def test_assemble_async_timeout(assembler, signature_data_url, monkeypatch):
    def slow(*args, **kwargs):
        time.sleep(0.5)
        return b""

    monkeypatch.setattr(assembler, "assemble", slow)
    with pytest.raises(PipelineException) as exc:
        asyncio.run(assembler.assemble_async(_snapshot(), signature_data_url, _audit(), timeout=0.05))
    assert exc.value.step == "timeout"


def test_markup_blocks_and_page_breaks():
    markup = (
        "<h1>Terms</h1><p>First <strong>bold</strong> &amp; <em>soft</em></p>"
        '<div class="page-break"></div><p>Second page<br>line two</p>'
        "<p>broken <b>markup</p>"
    )
    story = markup_to_flowables(markup, "Helvetica", 400)
    kinds = [type(f).__name__ for f in story]
    assert kinds.count("PageBreak") == 1
    texts = _texts(render_markup_pdf(markup, title="T", font_name="Helvetica"))
    assert len(texts) == 2
    assert "First bold & soft" in texts[0]
    assert "Second page" in texts[1] and "line two" in texts[1]
    assert "broken" in texts[1]


def test_merge_documents_preserves_order():
    merged = merge_documents(_master_pdf(1), _master_pdf(2))
    texts = _texts(merged)
    assert [t.strip() for t in texts] == ["MASTER PAGE 1", "MASTER PAGE 1", "MASTER PAGE 2"]


def test_env_credential_provider_without_path_returns_none():
    assert EnvCredentialProvider(cert_path="").get_credential() is None


def test_configured_but_missing_credential_is_dependency_error(signature_data_url, tmp_path):
    assembler = DocumentAssembler(
        None, EnvCredentialProvider(cert_path=str(tmp_path / "missing.p12")), font_name="Helvetica"
    )
    with pytest.raises(DependencyUnavailableException):
        assembler.assemble(_snapshot(), signature_data_url, _audit())


def test_unreadable_credential_is_dependency_error(tmp_path):
    path = tmp_path / "broken.p12"
    path.write_bytes(b"garbage")
    with pytest.raises(DependencyUnavailableException):
        EnvCredentialProvider(cert_path=str(path), passphrase=b"x").get_credential()


@pytest.fixture
def pkcs12_bundle(tmp_path):
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.hazmat.primitives.serialization import pkcs12
    from cryptography.x509.oid import NameOID

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Tripsign Test Signer")])
    now = datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    bundle = pkcs12.serialize_key_and_certificates(
        b"signer", key, cert, None, serialization.BestAvailableEncryption(b"secret")
    )
    path = tmp_path / "signer.p12"
    path.write_bytes(bundle)
    return path


def test_signed_document_carries_valid_signature(pkcs12_bundle, signature_data_url):
    from pyhanko.pdf_utils.reader import PdfFileReader
    from pyhanko.sign.validation import validate_pdf_signature
    from pyhanko_certvalidator import ValidationContext

    provider = EnvCredentialProvider(
        cert_path=str(pkcs12_bundle), passphrase=b"secret", reason="Signed by customer", location="Taipei"
    )
    assembler = DocumentAssembler(None, provider, font_name="Helvetica")
    signed = assembler.assemble(_snapshot(), signature_data_url, _audit())

    reader = PdfFileReader(io.BytesIO(signed))
    reader.decrypt(TOKEN[-6:])
    assert len(reader.embedded_signatures) == 1
    embedded = reader.embedded_signatures[0]
    assert embedded.field_name == "Signature1"
    status = validate_pdf_signature(embedded, ValidationContext(allow_fetching=False))
    assert status.intact
    assert status.valid

    # the signed bytes still open as the same document
    assert "Signature Audit Trail" in _texts(signed)[-1]


def _png_data_url(width, height, color=(0, 0, 0, 255)):
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


# Image placement: "w 0 0 h x y cm /Name Do".
_DRAW_RE = re.compile(rb"([\d.]+) 0 0 ([\d.]+) ([\d.]+) ([\d.]+) cm\s+/\S+ Do")


def test_signature_box_fits_tall_images_inside_margins():
    page_w, page_h = 595.27, 841.89
    x, y, w, h = signature_box(page_w, page_h, 40, 1200, 180, 48)
    assert h == pytest.approx(page_h - 96)
    assert w == pytest.approx(40 * (page_h - 96) / 1200)
    assert x + w == pytest.approx(page_w - 48)
    assert y == 48


def test_signature_box_wide_images_keep_requested_width():
    x, y, w, h = signature_box(595.27, 841.89, 300, 100, 180, 48)
    assert (w, h) == pytest.approx((180, 60))


def test_tall_signature_is_drawn_on_the_page():
    body = render_markup_pdf("<p>Body</p>", title="T", font_name="Helvetica")
    stamped = overlay_signature(body, _png_data_url(40, 1200), width_pt=180)
    page = PdfReader(io.BytesIO(stamped)).pages[-1]
    page_h = float(page.mediabox.height)

    draws = _DRAW_RE.findall(page.get_contents().get_data())
    assert draws
    w, h, x, y = (float(v) for v in draws[-1])
    assert y >= 48
    assert y + h <= page_h - 48 + 0.01
    assert w / h == pytest.approx(40 / 1200, rel=1e-3)


def test_outputs_are_password_protected(assembler, signature_data_url):
    for pdf in (
        assembler.assemble(_snapshot(), signature_data_url, _audit()),
        assembler.render_preview_pdf(_snapshot()),
    ):
        reader = PdfReader(io.BytesIO(pdf))
        assert reader.is_encrypted
        assert not reader.decrypt("wrong1")
        assert reader.decrypt(TOKEN[-6:])
        assert "Tour Agreement" in reader.pages[0].extract_text()


def test_encryption_allows_printing_only():
    pdf = encrypt_document(render_markup_pdf("<p>x</p>", font_name="Helvetica"), "123456")
    reader = PdfReader(io.BytesIO(pdf))
    permissions = reader.trailer["/Encrypt"].get_object()["/P"]
    assert permissions & UserAccessPermissions.PRINT
    assert permissions & UserAccessPermissions.PRINT_TO_REPRESENTATION
    assert not permissions & UserAccessPermissions.MODIFY
    assert not permissions & UserAccessPermissions.EXTRACT


def test_password_falls_back_to_contract_id():
    assert _snapshot().document_password == "ababab"
    assert _snapshot(signing_token="", contract_id="contract-42").document_password == "act-42"


def test_header_shows_logo_status_and_signing_time(assembler):
    snapshot = _snapshot(
        status="SIGNED",
        signed_at=datetime(2026, 10, 18, 9, 30, 15, tzinfo=UTC),
        logo_url=_png_data_url(200, 80, (11, 61, 145, 255)),
    )
    reader = _reader(assembler.render_preview_pdf(snapshot))
    first = reader.pages[0]
    text = first.extract_text()
    assert "Status: SIGNED" in text
    assert "Signed at: 2026-10-18T09:30:15+00:00" in text
    assert _has_image(first)


def test_local_logo_file_is_drawn(assembler, tmp_path):
    path = tmp_path / "logo.png"
    Image.new("RGB", (120, 60), (200, 30, 30)).save(path)
    reader = _reader(assembler.render_preview_pdf(_snapshot(logo_url=str(path))))
    assert _has_image(reader.pages[0])


@pytest.mark.parametrize("logo_url", ["https://cdn.example.com/logo.png", "/nonexistent/logo.png"])
def test_unloadable_logo_is_skipped(assembler, logo_url):
    reader = _reader(assembler.render_preview_pdf(_snapshot(logo_url=logo_url)))
    assert not _has_image(reader.pages[0])
    assert "Tour Agreement" in reader.pages[0].extract_text()
