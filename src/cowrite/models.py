"""Data models for comments, replies, and change proposals."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from ulid import new as new_ulid


def utc_now() -> str:
    """Current time as an ISO 8601 UTC timestamp ending in ``Z``."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _validate_utc(v: str) -> str:
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        if dt.tzinfo is None or dt.tzinfo.utcoffset(None) != timezone.utc.utcoffset(None):
            raise ValueError("Timestamp must be in UTC timezone")
        return v
    except (ValueError, AttributeError) as e:
        raise ValueError(f"Invalid ISO 8601 UTC timestamp: {v}") from e


class CommentStatus(str, Enum):
    """Comment lifecycle status."""

    PENDING = "pending"
    ANSWERED = "answered"
    RESOLVED = "resolved"


class AuthorRole(str, Enum):
    """Who wrote a reply."""

    USER = "user"
    AGENT = "agent"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"


class _CamelModel(BaseModel):
    """Base model serialized with camelCase keys.

    The persisted comments file is shared with the editor plugin and the
    shell hooks, which read ``selectedText``, ``createdAt`` and friends.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        """Dump to a JSON-compatible dict using the camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class Proposal(_CamelModel):
    """A suggested replacement for the commented text."""

    old_text: str
    new_text: str
    explanation: str = ""
    status: ProposalStatus = ProposalStatus.PENDING


class Reply(_CamelModel):
    """A message in a comment's reply thread."""

    id: str = Field(default_factory=lambda: str(new_ulid()))
    from_: AuthorRole = Field(..., alias="from")
    text: str
    created_at: str = Field(default_factory=utc_now)
    proposal: Proposal | None = None

    @field_validator("created_at")
    @classmethod
    def validate_utc_timestamp(cls, v: str) -> str:
        return _validate_utc(v)


class Comment(_CamelModel):
    """A comment anchored to ``[offset, offset + length)`` of one file.

    A comment with empty ``selected_text`` is a whole-file comment: it sits
    at offset 0 with length 0 and is never re-anchored.
    """

    id: str = Field(default_factory=lambda: str(new_ulid()))
    file: str = Field(..., min_length=1)
    offset: int = Field(default=0, ge=0)
    length: int = Field(default=0, ge=0)
    selected_text: str = ""
    comment: str
    status: CommentStatus = CommentStatus.PENDING
    replies: list[Reply] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    resolved_at: str | None = None

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: str) -> str:
        return _validate_utc(v)

    @field_validator("resolved_at")
    @classmethod
    def validate_resolved_at(cls, v: str | None) -> str | None:
        """Validate that resolved_at is valid ISO 8601 UTC format if present."""
        if v is None:
            return v
        return _validate_utc(v)

    @property
    def is_whole_file(self) -> bool:
        """True for comments on the document as a whole."""
        return self.selected_text == ""

    def latest_user_reply(self) -> Reply | None:
        """Most recent reply written by the user, if any."""
        for reply in reversed(self.replies):
            if reply.from_ == AuthorRole.USER:
                return reply
        return None

    def find_reply(self, reply_id: str) -> Reply | None:
        for reply in self.replies:
            if reply.id == reply_id:
                return reply
        return None
