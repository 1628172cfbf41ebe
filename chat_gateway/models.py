"""Request and response models for the edge chat gateway."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


class ChatMessage(BaseModel):
    """A single message in the conversation."""

    role: str = "user"
    content: str = ""


class ChatRequest(BaseModel):
    """Body of POST /api/chat (already guard-checked)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: List[ChatMessage] = Field(default_factory=list)
    lang: str = Field(default="en", description="Answer language: en or es")
    csrf: str = ""
    hp: str = Field(default="", description="Honeypot field, must be empty")
    pack_url: Optional[str] = Field(default=None, alias="packUrl")

    @field_validator("csrf", "hp", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("pack_url", mode="before")
    @classmethod
    def _drop_non_text_pack_url(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None

    @field_validator("lang", mode="before")
    @classmethod
    def _normalize_lang(cls, value: Any) -> str:
        return "es" if value == "es" else "en"

    @property
    def latest_message(self) -> str:
        return self.messages[-1].content if self.messages else ""


class LeadRequest(BaseModel):
    """Body of POST /api/lead (already guard-checked)."""

    model_config = ConfigDict(extra="ignore")

    csrf: str = ""
    hp: str = ""
    lead: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("csrf", "hp", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _as_text(value)


class LeadResponse(BaseModel):
    """Successful lead submission."""

    ok: bool = True
    id: str


class HintResponse(BaseModel):
    """Returned for non-POST requests to the API routes."""

    ok: bool = True
    hint: str


class ErrorResponse(BaseModel):
    """Error envelope: a bare machine-readable code."""

    error: str
