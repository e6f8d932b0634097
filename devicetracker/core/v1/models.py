from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import RESERVED_RECORD_KEYS


class FieldDefinition(BaseModel):
    """One column of the inventory schema.

    Stored in dtstore.yml with camelCase keys (isPrimary) so documents stay
    compatible with the JSON the web API exchanges.
    """

    id: str
    label: str
    type: Literal["text", "number", "date", "select"] = "text"
    options: Optional[list[str]] = None
    is_primary: bool = Field(default=False, alias="isPrimary")
    required: bool = False

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("id", "label")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("id")
    @classmethod
    def _not_reserved(cls, v: str) -> str:
        if v in RESERVED_RECORD_KEYS:
            raise ValueError(f"'{v}' is a reserved record key")
        return v

    @field_validator("options")
    @classmethod
    def _clean_options(cls, v):
        if v is None:
            return None
        out: list[str] = []
        for opt in v:
            s = str(opt).strip()
            if s and s not in out:
                out.append(s)
        return out

    @model_validator(mode="after")
    def _options_only_for_select(self):
        if self.type == "select":
            if self.options is None:
                self.options = []
        else:
            self.options = None
        return self

    def to_doc(self) -> dict:
        d = {"id": self.id, "label": self.label, "type": self.type}
        if self.options is not None:
            d["options"] = list(self.options)
        d["isPrimary"] = bool(self.is_primary)
        if self.required:
            d["required"] = True
        return d


class HistoryEvent(BaseModel):
    id: str
    date: str
    user: str = "System"
    action: str
    details: str = ""

    model_config = ConfigDict(extra="ignore", frozen=True)


class User(BaseModel):
    id: str
    email: str
    name: str
    role: Literal["ADMIN", "TEAM_MEMBER"] = "TEAM_MEMBER"
    password: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        v = str(v or "").strip().lower()
        if not v or "@" not in v:
            raise ValueError("a valid email is required")
        return v

    @field_validator("name")
    @classmethod
    def _name_required(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v:
            raise ValueError("name is required")
        return v

    def public(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}
