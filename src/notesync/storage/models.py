"""Pydantic models for the notesync storage layer."""

from __future__ import annotations

import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from notesync.errors import DecodeError


class Note(BaseModel):
    """A versioned note, identified by its key (the note's title)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    key: str = Field(alias="title", min_length=1)
    content: str = ""
    version: int = Field(default=0, ge=0)

    @classmethod
    def empty(cls, key: str) -> Note:
        """Synthesized note for a key the server has never seen."""
        return cls(key=key, content="", version=0)

    def to_wire(self) -> dict:
        return {"title": self.key, "content": self.content, "version": self.version}

    def encode(self) -> bytes:
        return json.dumps(self.to_wire(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes | str) -> Note:
        """Decode a wire payload, raising ``DecodeError`` when it is malformed."""
        try:
            raw = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(f"Malformed note payload: {exc}") from exc
        if not isinstance(raw, dict):
            raise DecodeError(f"Expected a JSON object, got {type(raw).__name__}")
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise DecodeError(f"Invalid note payload: {exc}") from exc
