"""Signed-document assembly pipeline.

    render markup -> body PDF -> [master pages + body] -> signature overlay
    -> audit page -> encryption -> PAdES signature (when a credential is configured)

Each step takes the previous step's bytes and returns new bytes; nothing is
persisted here, so a failure at any step leaves no partial artifact. The
pipeline reads only the snapshot, the signature image, the audit info and the
credential, and builds its own ReportLab documents per call.
"""
from __future__ import annotations

import asyncio
import io
import logging
from contextlib import contextmanager
from typing import Optional

from pypdf import PdfReader, PdfWriter
from pypdf.constants import UserAccessPermissions
from reportlab.pdfgen import canvas

from tripsign.core.settings import settings
from tripsign.exceptions import ContractError, DependencyUnavailableException, PipelineException
from tripsign.schemas.contract import AuditInfo, ContractSnapshot
from tripsign.services.pdf_render import ensure_font, image_reader_from_data_url, render_markup_pdf
from tripsign.services.pdf_signing import CredentialProvider, EnvCredentialProvider, sign_pdf
from tripsign.services.variable_renderer import render_final
from tripsign.utils.datetime import isoformat_utc

logger = logging.getLogger("tripsign.pipeline")

SIGNATURE_MARGIN = 48
AUDIT_PAGE_TITLE = "Signature Audit Trail"
DOCUMENT_PERMISSIONS = UserAccessPermissions.PRINT | UserAccessPermissions.PRINT_TO_REPRESENTATION


@contextmanager
def _step(name: str):
    try:
        yield
    except ContractError:
        raise
    except Exception as e:
        logger.error(f"Assembly step {name} failed: {e}")
        raise PipelineException(name, e) from e


def _write(writer: PdfWriter) -> bytes:
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def merge_documents(*documents: bytes) -> bytes:
    """Concatenate PDFs page by page, in argument order."""
    writer = PdfWriter()
    for data in documents:
        for page in PdfReader(io.BytesIO(data)).pages:
            writer.add_page(page)
    return _write(writer)


def signature_box(
    page_w: float,
    page_h: float,
    img_w: int,
    img_h: int,
    width_pt: float,
    margin: float = SIGNATURE_MARGIN,
) -> tuple[float, float, float, float]:
    """Bottom-right placement (x, y, w, h) that keeps the aspect ratio inside the margins."""
    scale = min(
        min(width_pt, page_w - 2 * margin) / float(img_w),
        (page_h - 2 * margin) / float(img_h),
    )
    draw_w, draw_h = img_w * scale, img_h * scale
    return page_w - margin - draw_w, margin, draw_w, draw_h


def overlay_signature(
    pdf_bytes: bytes,
    signature_data: str,
    *,
    width_pt: Optional[float] = None,
    margin: float = SIGNATURE_MARGIN,
) -> bytes:
    """Stamp the signature image bottom-right on the last page."""
    reader = PdfReader(io.BytesIO(pdf_bytes))
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)

    target = writer.pages[-1]
    box = target.mediabox
    left, bottom = float(box.left), float(box.bottom)
    page_w, page_h = float(box.width), float(box.height)

    image, img_w, img_h = image_reader_from_data_url(signature_data)
    x, y, draw_w, draw_h = signature_box(
        page_w, page_h, img_w, img_h, width_pt or settings.signature_width_pt, margin
    )

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(left + page_w, bottom + page_h), invariant=1)
    c.drawImage(
        image,
        left + x,
        bottom + y,
        width=draw_w,
        height=draw_h,
        mask="auto",
    )
    c.showPage()
    c.save()
    overlay = PdfReader(io.BytesIO(buf.getvalue())).pages[0]
    target.merge_page(overlay)
    return _write(writer)


def encrypt_document(pdf_bytes: bytes, password: str) -> bytes:
    """Protect the document with ``password`` as both user and owner password.

    Printing stays allowed; modifying and copying are not.
    """
    writer = PdfWriter(clone_from=PdfReader(io.BytesIO(pdf_bytes)))
    writer.encrypt(
        user_password=password,
        owner_password=password,
        permissions_flag=DOCUMENT_PERMISSIONS,
        algorithm="AES-256",
    )
    return _write(writer)


def audit_lines(info: AuditInfo) -> list[tuple[str, str]]:
    return [
        ("Document ID", info.document_id),
        ("Signer", info.signer_name),
        ("Signed at", isoformat_utc(info.signed_at)),
        ("IP address", info.origin_ip or "unknown"),
        ("Verification code", info.verification_code or "-"),
    ]


def append_audit_page(pdf_bytes: bytes, info: AuditInfo, *, font_name: Optional[str] = None) -> bytes:
    """Add a final human-readable page recording who signed, when and from where."""
    reader = PdfReader(io.BytesIO(pdf_bytes))
    last = reader.pages[-1].mediabox
    page_w, page_h = float(last.width), float(last.height)
    font = ensure_font(font_name)

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(page_w, page_h), invariant=1)
    c.setFont("Helvetica-Bold", 16)
    c.drawString(SIGNATURE_MARGIN, page_h - 72, AUDIT_PAGE_TITLE)
    y = page_h - 108
    for label, value in audit_lines(info):
        c.setFont("Helvetica-Bold", 10)
        c.drawString(SIGNATURE_MARGIN, y, f"{label}:")
        c.setFont(font, 10)
        c.drawString(SIGNATURE_MARGIN + 110, y, str(value))
        y -= 20
    c.showPage()
    c.save()
    return merge_documents(pdf_bytes, buf.getvalue())


class DocumentAssembler:
    def __init__(
        self,
        binary_store=None,
        credential_provider: Optional[CredentialProvider] = None,
        *,
        font_name: Optional[str] = None,
        signature_width_pt: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.binary_store = binary_store
        self.credential_provider = credential_provider or EnvCredentialProvider()
        self.font_name = font_name or settings.pdf_font_name
        self.signature_width_pt = signature_width_pt or settings.signature_width_pt
        self.timeout = timeout if timeout is not None else settings.pipeline_timeout_seconds

    def _master_document(self, snapshot: ContractSnapshot) -> Optional[bytes]:
        if not snapshot.master_document_id:
            return None
        data = self.binary_store.get(snapshot.master_document_id) if self.binary_store else None
        if not data:
            raise DependencyUnavailableException(
                f"Master document {snapshot.master_document_id} for contract {snapshot.contract_id} is unavailable"
            )
        return data

    def _base_document(self, snapshot: ContractSnapshot) -> bytes:
        with _step("render"):
            markup = render_final(
                snapshot.template_content,
                snapshot.variable_values,
                snapshot.definitions,
                wrap_bold=True,
                omit_signature=True,
            )
        with _step("convert"):
            body = render_markup_pdf(
                markup,
                title=snapshot.template_name,
                client_name=snapshot.client_name,
                status=snapshot.status,
                signed_at=snapshot.signed_at,
                logo_url=snapshot.logo_url,
                font_name=self.font_name,
            )
        master = self._master_document(snapshot)
        if master is None:
            return body
        with _step("merge"):
            return merge_documents(master, body)

    def _protect(self, document: bytes, snapshot: ContractSnapshot) -> bytes:
        with _step("encrypt"):
            return encrypt_document(document, snapshot.document_password)

    def render_preview_pdf(self, snapshot: ContractSnapshot) -> bytes:
        """Unsigned, password-protected document without signature or audit page."""
        return self._protect(self._base_document(snapshot), snapshot)

    def assemble(self, snapshot: ContractSnapshot, signature_data: str, audit_info: AuditInfo) -> bytes:
        logger.info(f"Assembling signed document for contract {snapshot.contract_id}")
        document = self._base_document(snapshot)
        with _step("signature_overlay"):
            document = overlay_signature(document, signature_data, width_pt=self.signature_width_pt)
        with _step("audit_page"):
            document = append_audit_page(document, audit_info, font_name=self.font_name)

        credential = self.credential_provider.get_credential()
        document = self._protect(document, snapshot)
        if credential is None:
            logger.warning(f"No signing credential configured; contract {snapshot.contract_id} left unsigned")
            return document
        with _step("sign"):
            return sign_pdf(document, credential, password=snapshot.document_password)

    async def assemble_async(
        self,
        snapshot: ContractSnapshot,
        signature_data: str,
        audit_info: AuditInfo,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Run ``assemble`` in a worker thread, bounded by ``timeout`` seconds."""
        limit = timeout if timeout is not None else self.timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.assemble, snapshot, signature_data, audit_info),
                timeout=limit or None,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Assembly for contract {snapshot.contract_id} timed out after {limit}s")
            raise PipelineException("timeout", e) from e
