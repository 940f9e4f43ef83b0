"""Rendered contract markup -> paginated PDF using ReportLab Platypus.

The markup is the output of ``render_final``: HTML-ish blocks with inline
emphasis and optional embedded data-URL images. Blocks become Paragraph
flowables, headings get heading styles, images become Image flowables and
``page-break`` markers force a new page.
"""
from __future__ import annotations

import base64
import io
import logging
import os
import re
from datetime import datetime
from typing import List, Optional

import bleach
from PIL import Image as PILImage
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Image, PageBreak, Paragraph, SimpleDocTemplate, Spacer

from tripsign.core.settings import settings
from tripsign.utils.datetime import isoformat_utc

logger = logging.getLogger("tripsign.pdf")

PAGE_SIZE = A4
MARGIN = 48
LOGO_MAX_WIDTH = 220
LOGO_MAX_HEIGHT = 120

INLINE_TAGS = {"b", "strong", "i", "em", "u", "br", "sup", "sub"}

_BLOCK_SPLIT_RE = re.compile(
    r"(?i)</(?:p|div|li|tr|h[1-6]|blockquote|ul|ol|table)\s*>|<hr\s*/?>|\n\s*\n"
)
_HEADING_RE = re.compile(r"(?is)^\s*<h([1-6])\b[^>]*>")
_PAGE_BREAK_RE = re.compile(r"""(?i)<div[^>]*class=["'][^"']*page-break[^"']*["'][^>]*>""")
_IMG_RE = re.compile(r"""(?is)<img\b[^>]*\bsrc=["'](data:image/[^"']+)["'][^>]*>""")
_PAGE_BREAK_MARK = "\x0c"

_CID_FONTS = {"MSung-Light", "STSong-Light", "MHei-Medium", "HeiseiMin-W3", "HYSMyeongJo-Medium"}


def ensure_font(font_name: Optional[str] = None) -> str:
    """Register ``font_name`` with ReportLab (once) and return the usable name.

    Accepts a standard Type 1 name, one of the built-in CJK CID fonts, or a
    path to a .ttf file.
    """
    name = font_name or settings.pdf_font_name
    if name in pdfmetrics.standardFonts:
        return name
    if name.lower().endswith(".ttf"):
        alias = os.path.splitext(os.path.basename(name))[0]
        if alias not in pdfmetrics.getRegisteredFontNames():
            pdfmetrics.registerFont(TTFont(alias, name))
            pdfmetrics.registerFontFamily(alias, normal=alias, bold=alias, italic=alias, boldItalic=alias)
        return alias
    if name in pdfmetrics.getRegisteredFontNames():
        return name
    if name in _CID_FONTS:
        pdfmetrics.registerFont(UnicodeCIDFont(name))
        # CID fonts have no bold/italic faces; map the family onto itself so
        # <b>/<i> inside paragraphs resolve.
        pdfmetrics.registerFontFamily(name, normal=name, bold=name, italic=name, boldItalic=name)
        return name
    logger.warning(f"Unknown PDF font {name!r}; falling back to Helvetica")
    return "Helvetica"


def is_cjk_font(font_name: str) -> bool:
    return font_name in _CID_FONTS


def _styles(font_name: str) -> dict:
    base = getSampleStyleSheet()
    wrap = "CJK" if is_cjk_font(font_name) else None
    body = ParagraphStyle(
        name="ContractBody",
        parent=base["BodyText"],
        fontName=font_name,
        fontSize=11,
        leading=16,
        spaceAfter=6,
        wordWrap=wrap,
    )
    return {
        "title": ParagraphStyle(
            name="ContractTitle", parent=body, fontSize=18, leading=24, alignment=TA_CENTER, spaceAfter=4
        ),
        "meta": ParagraphStyle(name="ContractMeta", parent=body, fontSize=10, leading=14, alignment=TA_CENTER),
        1: ParagraphStyle(name="ContractH1", parent=body, fontSize=16, leading=22, spaceBefore=8, spaceAfter=8),
        2: ParagraphStyle(name="ContractH2", parent=body, fontSize=14, leading=19, spaceBefore=6, spaceAfter=6),
        3: ParagraphStyle(name="ContractH3", parent=body, fontSize=12, leading=17, spaceBefore=4, spaceAfter=4),
        "body": body,
    }


def _clean_inline(fragment: str) -> str:
    """Strip everything but simple inline emphasis and map it to ReportLab's tags."""
    text = fragment.replace("\r\n", "\n").strip()
    text = re.sub(r"\s*\n\s*", "<br>", text)
    text = bleach.clean(text, tags=INLINE_TAGS, attributes={}, strip=True)
    text = re.sub(r"(?i)<(/?)strong>", r"<\1b>", text)
    text = re.sub(r"(?i)<(/?)em>", r"<\1i>", text)
    text = re.sub(r"(?i)<br\s*/?>", "<br/>", text)
    return re.sub(r"^(?:<br/>)+|(?:<br/>)+$", "", text)


def _plain(fragment: str) -> str:
    return bleach.clean(fragment, tags=set(), strip=True)


def _paragraph(fragment: str, style: ParagraphStyle) -> Optional[Paragraph]:
    text = _clean_inline(fragment)
    if not text:
        return None
    try:
        return Paragraph(text, style)
    except ValueError as e:
        logger.warning(f"Falling back to plain text for malformed paragraph: {e}")
        return Paragraph(_plain(fragment), style)


def _decode_data_url(data_url: str) -> bytes:
    payload = data_url.split(",", 1)[1]
    return base64.b64decode(re.sub(r"\s+", "", payload))


def _image(
    source: str | bytes,
    max_width: float,
    max_height: float = 200.0,
    h_align: str = "LEFT",
) -> Optional[Image]:
    """Image flowable scaled down to fit ``max_width`` x ``max_height``.

    ``source`` is a data URL or raw image bytes.
    """
    try:
        raw = source if isinstance(source, bytes) else _decode_data_url(source)
        with PILImage.open(io.BytesIO(raw)) as img:
            width, height = img.size
    except (IndexError, ValueError, OSError) as e:
        logger.warning(f"Skipping undecodable embedded image: {e}")
        return None
    scale = min(1.0, max_width / float(width), max_height / float(height))
    return Image(io.BytesIO(raw), width=width * scale, height=height * scale, hAlign=h_align)


def _logo(logo_url: str, max_width: float) -> Optional[Image]:
    """Template logo from a data URL or a local file; remote URLs are not fetched."""
    if logo_url.startswith("data:"):
        return _image(logo_url, max_width, LOGO_MAX_HEIGHT, "CENTER")
    if re.match(r"(?i)^[a-z][a-z0-9+.-]*://", logo_url):
        logger.info(f"Skipping remote logo {logo_url}")
        return None
    if not os.path.isfile(logo_url):
        logger.warning(f"Logo file {logo_url} not found")
        return None
    with open(logo_url, "rb") as f:
        return _image(f.read(), max_width, LOGO_MAX_HEIGHT, "CENTER")


def markup_to_flowables(markup: str, font_name: str, max_width: float) -> List:
    styles = _styles(font_name)
    marked = _PAGE_BREAK_RE.sub(_PAGE_BREAK_MARK, markup or "")
    story: List = []

    def add_text(fragment: str, style: ParagraphStyle) -> None:
        para = _paragraph(fragment, style)
        if para is not None:
            story.append(para)

    for chunk in marked.split(_PAGE_BREAK_MARK):
        if story:
            story.append(PageBreak())
        for block in _BLOCK_SPLIT_RE.split(chunk):
            if not block.strip():
                continue
            heading = _HEADING_RE.match(block)
            style = styles[min(int(heading.group(1)), 3)] if heading else styles["body"]
            pos = 0
            for img in _IMG_RE.finditer(block):
                add_text(block[pos:img.start()], style)
                flowable = _image(img.group(1), max_width)
                if flowable is not None:
                    story.append(flowable)
                pos = img.end()
            add_text(block[pos:], style)
    return story


def _footer(font_name: str):
    def draw(canvas, doc):
        canvas.saveState()
        canvas.setFont(font_name, 8)
        canvas.drawRightString(doc.pagesize[0] - MARGIN, MARGIN / 2, f"Page {doc.page}")
        canvas.restoreState()
    return draw


def render_markup_pdf(
    markup: str,
    *,
    title: str = "",
    client_name: Optional[str] = None,
    status: Optional[str] = None,
    signed_at: Optional[datetime] = None,
    logo_url: Optional[str] = None,
    font_name: Optional[str] = None,
) -> bytes:
    """Lay out contract markup as an A4 PDF with a header and page numbers.

    The header is the template logo (when it can be loaded), the title, then
    one line each for client, status and signing time when given.
    """
    font = ensure_font(font_name)
    styles = _styles(font)
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=PAGE_SIZE,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=MARGIN,
        bottomMargin=MARGIN,
        title=title,
        invariant=1,
    )
    story: List = []
    if logo_url:
        logo = _logo(logo_url, min(LOGO_MAX_WIDTH, doc.width))
        if logo is not None:
            story.extend([logo, Spacer(1, 8)])
    if title:
        story.append(Paragraph(_plain(title), styles["title"]))
    if client_name:
        story.append(Paragraph(f"Client: {_plain(client_name)}", styles["meta"]))
    if status:
        story.append(Paragraph(f"Status: {_plain(status)}", styles["meta"]))
    if signed_at:
        story.append(Paragraph(f"Signed at: {isoformat_utc(signed_at)}", styles["meta"]))
    if story:
        story.append(Spacer(1, 12))
    story.extend(markup_to_flowables(markup, font, doc.width))
    if not story:
        story.append(Spacer(1, 1))

    footer = _footer(font)
    doc.build(story, onFirstPage=footer, onLaterPages=footer)
    buf.seek(0)
    return buf.read()


def image_reader_from_data_url(data_url: str) -> tuple[ImageReader, int, int]:
    """Decode a data-URL raster into an RGBA ImageReader plus its pixel size."""
    payload = data_url.split(",", 1)[1]
    raw = base64.b64decode(re.sub(r"\s+", "", payload), validate=True)
    img = PILImage.open(io.BytesIO(raw))
    img.load()
    rgba = img.convert("RGBA")
    return ImageReader(rgba), rgba.width, rgba.height
