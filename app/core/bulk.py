"""Bulk operations over a selection of articles.

Each operation fans one user intent out to independent per-article
mutations. A failure on one article (deleted meanwhile, belongs to someone
else) is recorded in that article's outcome and the rest of the batch goes
on. Only problems with the request itself (empty selection, invalid status,
no usable tag names) abort the whole call.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from app.core.errors import ConflictError, LibraryError, NotFoundError, ValidationError
from app.core.models import Tag, next_status, normalize_tag_name, parse_status

if TYPE_CHECKING:
    from app.core.associations import AssociationEngine
    from app.core.models import Article, ArticleStatus
    from app.core.storage import DB

logger = logging.getLogger(__name__)


class BulkOperation(str, Enum):
    """Operations available from the bulk actions bar."""

    FAVORITE = "favorite"
    UNFAVORITE = "unfavorite"
    TAG = "tag"
    STATUS_CHANGE = "status"
    ADVANCE_STATUS = "advance"
    DELETE = "delete"


@dataclass
class ItemOutcome:
    """Result of applying a bulk operation to one article."""

    article_id: str
    ok: bool
    changed: bool = False
    error: str | None = None  # error kind, e.g. "not_found"
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "article_id": self.article_id,
            "ok": self.ok,
            "changed": self.changed,
            "error": self.error,
            "message": self.message,
        }


@dataclass
class BulkResult:
    """Per-article outcomes of one bulk call."""

    operation: BulkOperation
    outcomes: list[ItemOutcome] = field(default_factory=list)
    created_tags: list[Tag] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def changed(self) -> int:
        return sum(1 for o in self.outcomes if o.changed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "changed": self.changed,
            "created_tags": [t.to_dict() for t in self.created_tags],
            "results": [o.to_dict() for o in self.outcomes],
        }


def _selection(article_ids: Iterable[str] | None) -> list[str]:
    """Deduplicate the selected ids, keeping the caller's order."""
    seen: dict[str, None] = {}
    for article_id in article_ids or ():
        article_id = str(article_id).strip()
        if article_id:
            seen.setdefault(article_id, None)
    if not seen:
        raise ValidationError("No articles selected")
    return list(seen)


def clean_tag_names(tag_names: Iterable[str] | None) -> list[str]:
    """Trim, lower-case, drop empties and duplicates (first occurrence wins)."""
    names: dict[str, None] = {}
    for raw in tag_names or ():
        if raw is None or not str(raw).strip():
            continue
        names.setdefault(normalize_tag_name(str(raw)), None)
    return list(names)


class BulkCoordinator:
    """Applies bulk operations for a user, reporting per-article outcomes."""

    def __init__(self, db: DB, engine: AssociationEngine) -> None:
        self.db = db
        self.engine = engine

    def _run(
        self,
        operation: BulkOperation,
        user_id: str,
        article_ids: list[str],
        apply: Callable[[str], bool],
        result: BulkResult | None = None,
    ) -> BulkResult:
        result = result or BulkResult(operation=operation)
        for article_id in article_ids:
            try:
                changed = apply(article_id)
                result.outcomes.append(ItemOutcome(article_id=article_id, ok=True, changed=changed))
            except LibraryError as e:
                logger.warning(f"Bulk {operation.value} failed for article {article_id}: {e}")
                result.outcomes.append(
                    ItemOutcome(article_id=article_id, ok=False, error=e.kind, message=str(e))
                )
            except sqlite3.Error as e:
                logger.exception(f"Bulk {operation.value}: storage error on article {article_id}")
                result.outcomes.append(
                    ItemOutcome(article_id=article_id, ok=False, error="storage", message=str(e))
                )
        logger.info(
            f"Bulk {operation.value} for user {user_id}: "
            f"{result.succeeded} ok, {result.failed} failed, {result.changed} changed"
        )
        return result

    def update_article(
        self,
        user_id: str,
        article_id: str,
        *,
        status: ArticleStatus | None = None,
        is_favorite: bool | None = None,
        advance: bool = False,
        toggle_favorite: bool = False,
    ) -> tuple[Article, bool]:
        """Read-modify-write one article atomically. Returns (article, changed).

        Also serves the single-article status and favorite edits.
        """
        with self.db.transaction():
            article = self.db.get_article(user_id, article_id)
            if article is None:
                raise NotFoundError(f"Article {article_id} not found")
            if advance:
                status = next_status(article.status)
            if toggle_favorite:
                is_favorite = not article.is_favorite
            status_changes = status is not None and status != article.status
            favorite_changes = is_favorite is not None and is_favorite != article.is_favorite
            if not (status_changes or favorite_changes):
                return article, False
            if not self.db.update_article(
                user_id,
                article_id,
                status=status if status_changes else None,
                is_favorite=is_favorite if favorite_changes else None,
            ):
                raise ConflictError(f"Article {article_id} changed during update")
            return self.db.get_article(user_id, article_id), True

    def _update(self, user_id: str, article_id: str, **changes: Any) -> bool:
        _, changed = self.update_article(user_id, article_id, **changes)
        return changed

    def bulk_favorite(self, user_id: str, article_ids: Iterable[str]) -> BulkResult:
        ids = _selection(article_ids)
        return self._run(
            BulkOperation.FAVORITE, user_id, ids,
            lambda aid: self._update(user_id, aid, is_favorite=True),
        )

    def bulk_unfavorite(self, user_id: str, article_ids: Iterable[str]) -> BulkResult:
        ids = _selection(article_ids)
        return self._run(
            BulkOperation.UNFAVORITE, user_id, ids,
            lambda aid: self._update(user_id, aid, is_favorite=False),
        )

    def bulk_status_change(
        self, user_id: str, article_ids: Iterable[str], new_status: str | ArticleStatus
    ) -> BulkResult:
        ids = _selection(article_ids)
        status = parse_status(new_status)
        return self._run(
            BulkOperation.STATUS_CHANGE, user_id, ids,
            lambda aid: self._update(user_id, aid, status=status),
        )

    def bulk_advance_status(self, user_id: str, article_ids: Iterable[str]) -> BulkResult:
        """Move each article one queue stage forward; archived ones stay put."""
        ids = _selection(article_ids)
        return self._run(
            BulkOperation.ADVANCE_STATUS, user_id, ids,
            lambda aid: self._update(user_id, aid, advance=True),
        )

    def bulk_tag(
        self, user_id: str, article_ids: Iterable[str], tag_names: Iterable[str]
    ) -> BulkResult:
        """Resolve or create each named tag once, then attach all of them to every article."""
        ids = _selection(article_ids)
        names = clean_tag_names(tag_names)
        if not names:
            raise ValidationError("No tag names given")

        result = BulkResult(operation=BulkOperation.TAG)
        tags: list[Tag] = []
        for name in names:
            tag, created = self.engine.resolve_or_create_tag(user_id, name)
            tags.append(tag)
            if created:
                result.created_tags.append(tag)

        def attach_all(article_id: str) -> bool:
            _, changed = self.engine.attach_tags(user_id, article_id, [t.id for t in tags])
            return changed

        return self._run(BulkOperation.TAG, user_id, ids, attach_all, result=result)

    def bulk_delete(self, user_id: str, article_ids: Iterable[str]) -> BulkResult:
        """Delete articles with their highlights. Tags are not touched."""
        ids = _selection(article_ids)

        def delete(article_id: str) -> bool:
            if not self.db.delete_article(user_id, article_id):
                raise NotFoundError(f"Article {article_id} not found")
            return True

        return self._run(BulkOperation.DELETE, user_id, ids, delete)


_coordinator: BulkCoordinator | None = None


def init_bulk_coordinator(db: DB, engine: AssociationEngine) -> BulkCoordinator:
    """Initialize the global BulkCoordinator."""
    global _coordinator
    _coordinator = BulkCoordinator(db, engine)
    return _coordinator


def get_bulk_coordinator() -> BulkCoordinator:
    """Get the global BulkCoordinator. Must call init_bulk_coordinator first."""
    if _coordinator is None:
        raise RuntimeError("BulkCoordinator not initialized. Call init_bulk_coordinator first.")
    return _coordinator
