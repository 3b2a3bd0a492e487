"""Library entities (tags, articles, highlights, stacks) and their validation rules."""

from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from app.core.errors import ValidationError

DEFAULT_TAG_COLOR = "#6366f1"
DEFAULT_HIGHLIGHT_COLOR = "#fef08a"
MAX_TAG_NAME_LENGTH = 100

_HEX_COLOR_RE = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")


def utcnow() -> str:
    """Current time as ISO string (UTC)."""
    return datetime.now(timezone.utc).isoformat()


class ArticleStatus(str, Enum):
    """Reading queue an article sits in."""

    INBOX = "inbox"
    DAILY = "daily"
    CONTINUE = "continue"
    REDISCOVERY = "rediscovery"
    ARCHIVED = "archived"


# Fixed queue order used by "advance status"; ARCHIVED is terminal.
QUEUE_ORDER: tuple[ArticleStatus, ...] = (
    ArticleStatus.INBOX,
    ArticleStatus.DAILY,
    ArticleStatus.CONTINUE,
    ArticleStatus.REDISCOVERY,
    ArticleStatus.ARCHIVED,
)


def parse_status(value: str | ArticleStatus) -> ArticleStatus:
    """Parse a status value, raising ValidationError for unknown statuses."""
    if isinstance(value, ArticleStatus):
        return value
    try:
        return ArticleStatus(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in QUEUE_ORDER)
        raise ValidationError(f"Invalid status '{value}'. Allowed: {allowed}") from None


def next_status(status: ArticleStatus) -> ArticleStatus:
    """Next stage in the reading queue. Archived stays archived."""
    idx = QUEUE_ORDER.index(status)
    return QUEUE_ORDER[min(idx + 1, len(QUEUE_ORDER) - 1)]


def normalize_tag_name(name: str | None) -> str:
    """Trim and lower-case a tag name.

    Tag names are unique per user case-insensitively, so the normalized form
    is what gets stored and compared.
    """
    normalized = (name or "").strip().lower()
    if not normalized:
        raise ValidationError("Tag name is required")
    if len(normalized) > MAX_TAG_NAME_LENGTH:
        raise ValidationError(f"Tag name exceeds {MAX_TAG_NAME_LENGTH} characters")
    return normalized


def normalize_color(color: str | None, default: str = DEFAULT_TAG_COLOR) -> str:
    """Validate a hex color, adding a missing leading '#'."""
    if not color:
        return default
    color = color.strip()
    if not color.startswith("#"):
        color = "#" + color
    if not _HEX_COLOR_RE.match(color):
        raise ValidationError(f"Color must be a valid hex color code, got '{color}'")
    return color


def normalize_tag_ids(tag_ids: Iterable[str] | None) -> tuple[str, ...]:
    """Tag references as a sorted, duplicate-free tuple (order is irrelevant)."""
    return tuple(sorted({str(t) for t in (tag_ids or ())}))


def validate_position(start: Any, end: Any) -> tuple[int, int]:
    """Check highlight character offsets: integers with 0 <= start < end."""
    for value in (start, end):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"Highlight offsets must be integers, got {start!r}, {end!r}")
    if start < 0 or start >= end:
        raise ValidationError(f"Invalid highlight position [{start}, {end}]")
    return start, end


@dataclass(frozen=True)
class Tag:
    id: str
    user_id: str
    name: str
    color: str = DEFAULT_TAG_COLOR
    created_at: str | None = None
    updated_at: str | None = None
    article_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "color": self.color,
            "article_count": self.article_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row, article_count: int = 0) -> Tag:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            color=row["color"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            article_count=article_count,
        )


@dataclass(frozen=True)
class Article:
    id: str
    user_id: str
    title: str
    url: str | None = None
    status: ArticleStatus = ArticleStatus.INBOX
    is_favorite: bool = False
    tags: tuple[str, ...] = ()
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self, tag_names: list[str] | None = None) -> dict[str, Any]:
        d = {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "url": self.url,
            "status": self.status.value,
            "is_favorite": self.is_favorite,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if tag_names is not None:
            d["tag_names"] = tag_names
        return d

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Article:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            url=row["url"],
            status=ArticleStatus(row["status"]),
            is_favorite=bool(row["is_favorite"]),
            tags=normalize_tag_ids(json.loads(row["tag_ids"] or "[]")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class Highlight:
    id: str
    article_id: str
    user_id: str
    text: str
    start: int
    end: int
    title: str | None = None
    note: str | None = None
    color: str = DEFAULT_HIGHLIGHT_COLOR
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "article_id": self.article_id,
            "user_id": self.user_id,
            "text": self.text,
            "annotations": {"title": self.title, "note": self.note},
            "color": self.color,
            "position": {"start": self.start, "end": self.end},
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Highlight:
        return cls(
            id=row["id"],
            article_id=row["article_id"],
            user_id=row["user_id"],
            text=row["text"],
            start=row["position_start"],
            end=row["position_end"],
            title=row["annotation_title"],
            note=row["annotation_note"],
            color=row["color"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class Stack:
    """Saved search: a query plus filters applied to article listing."""

    id: str
    name: str
    query: str = ""
    filters: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "query": self.query,
            "filters": dict(self.filters),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Stack:
        return cls(
            id=row["id"],
            name=row["name"],
            query=row["query"] or "",
            filters=json.loads(row["filters_json"] or "{}"),
            user_id=row["user_id"],
        )
