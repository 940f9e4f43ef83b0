from __future__ import annotations

import enum
import re
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Characters a placeholder key may use; the renderer matches keys with the same pattern.
KEY_PATTERN = r"[\w.]+"
_KEY_RE = re.compile(KEY_PATTERN)


class VariableType(str, enum.Enum):
    text = "text"
    number = "number"
    date = "date"
    textarea = "textarea"
    checkbox = "checkbox"
    boolean = "boolean"
    image = "image"


class VariableDefinition(BaseModel):
    """One declared, typed slot of a template."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    key: str
    label: str = ""
    type: VariableType = VariableType.text
    is_customer_fillable: bool = Field(default=False, alias="isCustomerFillable")

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        # Older templates stored the key under "name" and the flag in snake case.
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("key") and data.get("name"):
                data["key"] = data["name"]
            if "isCustomerFillable" not in data and "is_customer_fillable" in data:
                data["isCustomerFillable"] = data.pop("is_customer_fillable")
        return data

    @field_validator("key")
    @classmethod
    def _valid_key(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("variable key must not be blank")
        if not _KEY_RE.fullmatch(v):
            raise ValueError(f"variable key {v!r} may only contain letters, digits, underscores and dots")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def is_boolean(self) -> bool:
        return self.type in (VariableType.checkbox, VariableType.boolean)


def parse_definitions(raw: Optional[Iterable[Any]]) -> List[VariableDefinition]:
    """Parse stored declarations, rejecting duplicate keys."""
    if not raw:
        return []
    definitions: List[VariableDefinition] = []
    seen: set[str] = set()
    for item in raw:
        definition = item if isinstance(item, VariableDefinition) else VariableDefinition.model_validate(item)
        if definition.key in seen:
            raise ValueError(f"duplicate variable key: {definition.key}")
        seen.add(definition.key)
        definitions.append(definition)
    return definitions


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    content: str = ""
    variables: List[VariableDefinition] = Field(default_factory=list)
    logo_url: Optional[str] = None
    master_document_id: Optional[str] = None
    requires_approval: bool = True
    is_active: bool = True

    @field_validator("variables")
    @classmethod
    def _unique_keys(cls, v: List[VariableDefinition]) -> List[VariableDefinition]:
        parse_definitions(v)
        return v

    def variables_json(self) -> list[dict]:
        return [d.model_dump(by_alias=True, mode="json") for d in self.variables]
