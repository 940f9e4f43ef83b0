"""Template variable substitution.

Markup is scanned once into text and ``{{ key }}`` placeholder segments; each
render mode is a single join over those segments:

* ``render_final``: locked values for staff preview, printing and the PDF.
* ``render_interactive_preview``: customer-fillable fields become form inputs.
* ``normalize_variable_values``: raw input bag -> canonical typed values.

Placeholders with no matching declaration are left exactly as written.
"""
from __future__ import annotations

import base64
import binascii
import html
import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from tripsign.core.settings import settings
from tripsign.schemas.template import KEY_PATTERN, VariableDefinition, VariableType, parse_definitions
from tripsign.services.numerals import amount_in_words

logger = logging.getLogger("tripsign.renderer")

PLACEHOLDER_RE = re.compile(r"\{\{\s*(" + KEY_PATTERN + r")\s*\}\}")
DATA_IMAGE_RE = re.compile(r"^data:image/[\w.+-]+;base64,([A-Za-z0-9+/=\s]+)$")

CHECKED_LABEL = "已勾選"
UNCHECKED_LABEL = "未勾選"
UPPER_SUFFIX = "_upper"
LIST_SEPARATOR = ", "

_TRUTHY_STRINGS = frozenset({"true", "on", "1", "yes", CHECKED_LABEL})

DOCUMENT_STYLE = """
    @page { size: A4; margin: 20mm 12mm 20mm 12mm; }
    body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, "Noto Sans TC", Arial, "PingFang TC", "Heiti TC", sans-serif; font-size: 12pt; color: #111; }
    h1,h2,h3 { margin: 0 0 8px 0; }
    .page-break { page-break-before: always; }
    .var-value { font-weight: 700; color: #0b3d91; }
    .var-readonly { background: #f3f5f9; padding: 0 2px; }
    .customer-field { border: 0; border-bottom: 1px solid #333; min-width: 8em; }
"""


@dataclass(frozen=True)
class TextSegment:
    text: str


@dataclass(frozen=True)
class Placeholder:
    key: str
    raw: str


Segment = Union[TextSegment, Placeholder]
Definitions = Optional[Iterable[Union[VariableDefinition, Mapping[str, Any]]]]


def tokenize(markup: Optional[str]) -> List[Segment]:
    """Split markup into text and placeholder segments in one left-to-right pass."""
    markup = markup or ""
    segments: List[Segment] = []
    pos = 0
    for match in PLACEHOLDER_RE.finditer(markup):
        if match.start() > pos:
            segments.append(TextSegment(markup[pos:match.start()]))
        segments.append(Placeholder(match.group(1), match.group(0)))
        pos = match.end()
    if pos < len(markup):
        segments.append(TextSegment(markup[pos:]))
    return segments


def extract_variables(markup: Optional[str]) -> List[str]:
    """Distinct placeholder keys in order of first appearance."""
    seen: Dict[str, None] = {}
    for segment in tokenize(markup):
        if isinstance(segment, Placeholder):
            seen.setdefault(segment.key, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def _index(definitions: Definitions) -> Dict[str, VariableDefinition]:
    return {d.key: d for d in parse_definitions(definitions)}


def _coerce_values(values: Union[str, Mapping[str, Any], None]) -> Dict[str, Any]:
    if isinstance(values, str):
        try:
            values = json.loads(values or "{}")
        except ValueError:
            logger.warning("variable_values is not valid JSON; treating as empty")
            return {}
    return dict(values) if isinstance(values, Mapping) else {}


def is_truthy(value: Any) -> bool:
    """Checkbox semantics: only the fixed truthy token set counts as checked."""
    if isinstance(value, (list, tuple)):
        return any(is_truthy(v) for v in value)
    if value is True:
        return True
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float, Decimal)):
        return value == 1
    if isinstance(value, str):
        # Exact match; "TRUE" or " on " are not checked.
        return value in _TRUTHY_STRINGS
    return False


def is_data_image(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    match = DATA_IMAGE_RE.match(value.strip())
    if not match:
        return False
    try:
        return bool(base64.b64decode(re.sub(r"\s+", "", match.group(1)), validate=True))
    except (binascii.Error, ValueError):
        return False


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral() else str(value)
    return str(value)


def _is_filled(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return True


def format_value(definition: VariableDefinition, value: Any) -> str:
    """Display form of a declared value (HTML-safe)."""
    if definition.is_boolean:
        return CHECKED_LABEL if is_truthy(value) else UNCHECKED_LABEL
    if definition.type == VariableType.image:
        if is_data_image(value):
            return f'<img src="{html.escape(value.strip(), quote=True)}" style="max-height: 200px; max-width: 100%;" />'
        return ""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        text = LIST_SEPARATOR.join(_scalar_text(v) for v in value if v is not None)
    else:
        text = _scalar_text(value)
    text = html.escape(text, quote=False)
    if definition.type == VariableType.textarea:
        text = text.replace("\r\n", "\n").replace("\n", "<br>")
    return text


def _derived_base(key: str, defs: Mapping[str, VariableDefinition]) -> Optional[str]:
    if key.endswith(UPPER_SUFFIX):
        base = key[: -len(UPPER_SUFFIX)]
        if base in defs:
            return base
    return None


def _emphasize(display: str) -> str:
    if display and not display.lstrip().startswith("<"):
        return f"<strong>{display}</strong>"
    return display


def signature_tag(signature_image: str) -> str:
    return (
        '<div class="mt-2"><img src="'
        + html.escape(signature_image, quote=True)
        + '" alt="簽名圖片" style="max-height: 220px;"></div>'
    )


# ---------------------------------------------------------------------------
# Render modes
# ---------------------------------------------------------------------------

def render_final(
    markup: Optional[str],
    variable_values: Union[str, Mapping[str, Any], None],
    definitions: Definitions,
    *,
    wrap_bold: bool = False,
    signature_image: Optional[str] = None,
    signature_placeholder: Optional[str] = None,
    omit_signature: bool = False,
) -> str:
    """Locked rendering of a contract.

    With ``signature_image`` the signature placeholder is replaced by the
    image (appended at the end when the markup has no placeholder). With
    ``omit_signature`` the placeholder is blanked instead, for outputs that
    place the signature themselves.
    """
    defs = _index(definitions)
    values = _coerce_values(variable_values)
    sig_key = signature_placeholder or settings.signature_placeholder
    sig_html = signature_tag(signature_image) if signature_image else None

    out: List[str] = []
    signature_placed = False
    for segment in tokenize(markup):
        if isinstance(segment, TextSegment):
            out.append(segment.text)
            continue
        key = segment.key
        if key == sig_key and key not in defs and (sig_html or omit_signature):
            out.append(sig_html or "")
            signature_placed = True
            continue
        if key in defs:
            display = format_value(defs[key], values.get(key))
        else:
            base = _derived_base(key, defs)
            if base is None:
                out.append(segment.raw)
                continue
            display = amount_in_words(values.get(base))
        out.append(_emphasize(display) if wrap_bold else display)

    rendered = "".join(out)
    if sig_html and not signature_placed:
        rendered += f"\n\n<div>{html.escape(sig_key)}：{sig_html}</div>"
    return rendered


def _field_input(definition: VariableDefinition, value: Any) -> str:
    name = html.escape(f"customer_variables[{definition.key}]", quote=True)
    label = html.escape(definition.label or definition.key, quote=True)
    filled = _is_filled(value)
    common = f'class="customer-field" name="{name}" data-key="{html.escape(definition.key, quote=True)}"'

    if definition.is_boolean:
        checked = " checked" if is_truthy(value) else ""
        return f'<label><input type="checkbox" {common}{checked}> {label}</label>'
    if definition.type == VariableType.textarea:
        body = html.escape(str(value), quote=False) if filled else ""
        return f'<textarea {common} placeholder="{label}">{body}</textarea>'
    if definition.type == VariableType.image:
        preview = format_value(definition, value) if filled else ""
        return f'{preview}<input type="file" accept="image/*" {common}>'

    input_type = {
        VariableType.number: "number",
        VariableType.date: "date",
    }.get(definition.type, "text")
    value_attr = f' value="{html.escape(_scalar_text(value), quote=True)}"' if filled else ""
    return f'<input type="{input_type}" {common} placeholder="{label}"{value_attr}>'


def render_interactive_preview(
    markup: Optional[str],
    variable_values: Union[str, Mapping[str, Any], None],
    definitions: Definitions,
    *,
    signature_placeholder: Optional[str] = None,
) -> str:
    """Customer-facing rendering used while a contract awaits signature.

    Customer-fillable fields render as inputs (blank until filled); staff
    pre-filled fields render as read-only text.
    """
    defs = _index(definitions)
    values = _coerce_values(variable_values)
    sig_key = signature_placeholder or settings.signature_placeholder

    out: List[str] = []
    for segment in tokenize(markup):
        if isinstance(segment, TextSegment):
            out.append(segment.text)
            continue
        key = segment.key
        definition = defs.get(key)
        if definition is not None and definition.is_customer_fillable:
            out.append(_field_input(definition, values.get(key)))
        elif definition is not None:
            out.append(f'<span class="var-value var-readonly">{format_value(definition, values.get(key))}</span>')
        elif (base := _derived_base(key, defs)) is not None:
            words = amount_in_words(values.get(base))
            out.append(f'<span class="var-value var-readonly">{words}</span>')
        elif key == sig_key:
            out.append('<div class="signature-slot" data-role="signature"></div>')
        else:
            out.append(segment.raw)
    return "".join(out)


def normalize_variable_values(
    raw_values: Union[str, Mapping[str, Any], None],
    definitions: Definitions,
) -> Dict[str, Any]:
    """Map a raw input bag to canonical typed values.

    Declared keys are always present in the result; undeclared keys pass
    through untouched. Idempotent.
    """
    incoming = _coerce_values(raw_values)
    output: Dict[str, Any] = {}
    for definition in parse_definitions(definitions):
        value = incoming.get(definition.key)
        if definition.is_boolean:
            output[definition.key] = is_truthy(value)
        elif definition.type == VariableType.image:
            output[definition.key] = value if isinstance(value, str) else ""
        elif isinstance(value, str):
            output[definition.key] = value.strip()
        else:
            output[definition.key] = "" if value is None else value

    for key, value in incoming.items():
        if key not in output:
            output[key] = value
    return output


def merge_variable_values(
    stored: Union[str, Mapping[str, Any], None],
    submitted: Union[str, Mapping[str, Any], None],
    definitions: Definitions,
) -> Dict[str, Any]:
    """Submitted values win over stored ones; the union is normalized."""
    merged = _coerce_values(stored)
    merged.update(_coerce_values(submitted))
    return normalize_variable_values(merged, definitions)


def wrap_document(body: str, *, style: Optional[str] = None) -> str:
    """Wrap rendered markup into a standalone printable HTML page."""
    css = DOCUMENT_STYLE if style is None else style
    return (
        '<!doctype html>\n<html><head><meta charset="utf-8">'
        f"<style>{css}</style></head><body>{body}</body></html>"
    )
