"""Reconciliation actions.

``Action`` is a closed tagged union over the four structural outcomes of
reconciling one candidate fact. ``ClassificationHint`` is what the external
merge classifier returns for one (candidate, neighbor) pair.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .validators import Metadata, MemoryId, Version


class ActionKind(StrEnum):
    ADD = "ADD"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    NOOP = "NOOP"

    @classmethod
    def parse(cls, value: Any) -> "ActionKind":
        """Accept the spellings LLMs produce (``none``, ``NONE``, ``no-op``...)."""
        if isinstance(value, ActionKind):
            return value
        if value is None:
            raise ValueError("Missing action kind")
        text = str(value).strip().upper().replace("-", "").replace("_", "")
        if text in ("NONE", "NOOP", "NOCHANGE"):
            return cls.NOOP
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown action kind: {value!r}") from None


class AddAction(BaseModel):
    kind: Literal[ActionKind.ADD] = ActionKind.ADD
    content: str = Field(min_length=1)
    metadata: Metadata = Field(default_factory=dict)
    reason: str | None = None


class UpdateAction(BaseModel):
    kind: Literal[ActionKind.UPDATE] = ActionKind.UPDATE
    target_id: MemoryId
    new_content: str = Field(min_length=1)
    # Per-key upsert; a None value removes the key
    metadata_patch: Metadata = Field(default_factory=dict)
    expected_version: Version | None = None
    reason: str | None = None


class DeleteAction(BaseModel):
    kind: Literal[ActionKind.DELETE] = ActionKind.DELETE
    target_id: MemoryId
    expected_version: Version | None = None
    reason: str | None = None


class NoopAction(BaseModel):
    kind: Literal[ActionKind.NOOP] = ActionKind.NOOP
    target_id: str | None = None
    reason: str | None = None
    # Set when the candidate was dropped because of an isolated failure
    error: str | None = None


Action = Annotated[AddAction | UpdateAction | DeleteAction | NoopAction, Field(discriminator="kind")]

action_adapter: TypeAdapter[Action] = TypeAdapter(Action)


class ClassificationHint(BaseModel):
    """Classifier verdict for one candidate against one existing neighbor."""

    kind: ActionKind
    # Merged/replacement text proposed for UPDATE; defaults to the candidate
    text: str | None = None
    reason: str | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def parse_kind(cls, v: Any) -> ActionKind:
        return ActionKind.parse(v)
