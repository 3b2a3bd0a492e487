"""Article <-> tag association engine.

Owns every mutation of the article/tag relationship and the invariant that a
tag id stored on an article always resolves to an existing tag of the same
user.

Tags keep no reverse index of the articles that use them, so deleting a tag
scans all of the owner's articles: O(articles) per deletion. The scan, the
reference removal and the tag row removal run in one transaction under the
owner's lock, so no reader sees a tag that is gone while a reference to it
survives, or a surviving tag already stripped from some articles.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterable, Iterator, Mapping

from app.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.core.models import Article, Tag, normalize_color, normalize_tag_name

if TYPE_CHECKING:
    from app.core.storage import DB

logger = logging.getLogger(__name__)


class KeyedLock:
    """One re-entrant lock per key, created on demand. Thread-safe."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
        if not lock.acquire(timeout=timeout):
            raise ConflictError(f"Timed out waiting for concurrent changes on '{key}'")
        try:
            yield
        finally:
            lock.release()


class AssociationEngine:
    """Attach, detach and cascade-delete tags on a user's articles.

    All writes for one user go through that user's lock; with it, deleting a
    tag is linearizable against attach/detach of the same tag, and
    resolve-or-create cannot produce two tags with the same name.
    """

    def __init__(self, db: DB, lock_timeout: float = 10.0) -> None:
        self.db = db
        self.lock_timeout = lock_timeout
        self._user_locks = KeyedLock()

    def _exclusive(self, user_id: str):
        return self._user_locks.hold(user_id, self.lock_timeout)

    def _require_article(self, user_id: str, article_id: str) -> Article:
        article = self.db.get_article(user_id, article_id)
        if article is None:
            raise NotFoundError(f"Article {article_id} not found")
        return article

    def _require_tag(self, user_id: str, tag_id: str) -> Tag:
        tag = self.db.find_tag(tag_id)
        if tag is None or tag.user_id != user_id:
            raise NotFoundError(f"Tag {tag_id} not found")
        return tag

    def _write_tags(self, user_id: str, article_id: str, tag_ids: tuple[str, ...]) -> Article:
        if not self.db.update_article(user_id, article_id, tag_ids=tag_ids):
            raise ConflictError(f"Article {article_id} changed while updating its tags")
        return self._require_article(user_id, article_id)

    def attach_tag(self, user_id: str, article_id: str, tag_id: str) -> tuple[Article, bool]:
        """Add a tag to an article. Returns (article, changed).

        Re-attaching a tag that is already present is a no-op and leaves
        updated_at untouched.
        """
        return self.attach_tags(user_id, article_id, [tag_id])

    def attach_tags(
        self, user_id: str, article_id: str, tag_ids: Iterable[str]
    ) -> tuple[Article, bool]:
        """Add several tags to an article in one write. Returns (article, changed).

        Every tag is checked before anything is written, so either all of
        them end up on the article or none do.
        """
        tag_ids = list(dict.fromkeys(tag_ids))
        with self._exclusive(user_id), self.db.transaction():
            article = self._require_article(user_id, article_id)
            for tag_id in tag_ids:
                self._require_tag(user_id, tag_id)
            missing = tuple(t for t in tag_ids if t not in article.tags)
            if not missing:
                return article, False
            return self._write_tags(user_id, article_id, article.tags + missing), True

    def detach_tag(self, user_id: str, article_id: str, tag_id: str) -> tuple[Article, bool]:
        """Remove a tag reference from one article. Never deletes the tag."""
        with self._exclusive(user_id), self.db.transaction():
            article = self._require_article(user_id, article_id)
            if tag_id not in article.tags:
                return article, False
            remaining = tuple(t for t in article.tags if t != tag_id)
            return self._write_tags(user_id, article_id, remaining), True

    def delete_tag(self, user_id: str, tag_id: str) -> int:
        """Delete a tag and strip it from every article of its owner.

        Returns the number of articles that lost the reference.

        Raises:
            NotFoundError: tag does not exist
            ForbiddenError: tag belongs to another user
        """
        with self._exclusive(user_id), self.db.transaction():
            tag = self.db.find_tag(tag_id)
            if tag is None:
                raise NotFoundError(f"Tag {tag_id} not found")
            if tag.user_id != user_id:
                raise ForbiddenError(f"Tag {tag_id} belongs to another user")

            members = self.db.articles_with_tag(user_id, tag_id)
            for article in members:
                remaining = tuple(t for t in article.tags if t != tag_id)
                if not self.db.update_article(user_id, article.id, tag_ids=remaining):
                    raise ConflictError(f"Article {article.id} vanished during tag deletion")

            if not self.db.delete_tag_row(user_id, tag_id):
                raise ConflictError(f"Tag {tag_id} was removed concurrently")

        logger.info(f"Deleted tag {tag_id} ('{tag.name}'), removed from {len(members)} articles")
        return len(members)

    def update_tag(
        self,
        user_id: str,
        tag_id: str,
        name: str | None = None,
        color: str | None = None,
    ) -> Tag:
        """Rename and/or recolor a tag. Omitted fields keep their value.

        Raises:
            NotFoundError: tag does not exist
            ForbiddenError: tag belongs to another user
            ValidationError: bad name or color, or the name is used by another tag
        """
        with self._exclusive(user_id), self.db.transaction():
            tag = self.db.find_tag(tag_id)
            if tag is None:
                raise NotFoundError(f"Tag {tag_id} not found")
            if tag.user_id != user_id:
                raise ForbiddenError(f"Tag {tag_id} belongs to another user")

            new_name = normalize_tag_name(name) if name is not None else tag.name
            new_color = normalize_color(color, default=tag.color) if color is not None else tag.color
            if new_name != tag.name:
                existing = self.db.get_tag_by_name(user_id, new_name)
                if existing is not None and existing.id != tag_id:
                    raise ValidationError(f'Tag with name "{new_name}" already exists')
            try:
                updated = self.db.update_tag_row(user_id, tag_id, name=new_name, color=new_color)
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Tag '{new_name}' was created concurrently") from e
            if not updated:
                raise ConflictError(f"Tag {tag_id} was removed concurrently")
            return self.db.get_tag(user_id, tag_id)

    def _insert_tag(self, user_id: str, name: str, color: str) -> Tag:
        try:
            return self.db.insert_tag(user_id=user_id, name=name, color=color)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Tag '{name}' was created concurrently") from e

    def create_tag(self, user_id: str, name: str, color: str | None = None) -> Tag:
        """Create a tag; duplicate names (case-insensitive) are rejected."""
        name = normalize_tag_name(name)
        color = normalize_color(color)
        with self._exclusive(user_id):
            if self.db.get_tag_by_name(user_id, name) is not None:
                raise ValidationError(f'Tag with name "{name}" already exists')
            return self._insert_tag(user_id, name, color)

    def resolve_or_create_tag(self, user_id: str, name: str) -> tuple[Tag, bool]:
        """Find a tag by case-insensitive name or create it. Returns (tag, created)."""
        name = normalize_tag_name(name)
        with self._exclusive(user_id):
            existing = self.db.get_tag_by_name(user_id, name)
            if existing is not None:
                return existing, False
            tag = self._insert_tag(user_id, name, normalize_color(None))
        logger.info(f"Created tag '{name}' ({tag.id}) for user {user_id}")
        return tag, True


def resolve_tag_names(
    article_tag_ids: Iterable[Iterable[str]],
    tag_catalog: Mapping[str, str] | Iterable[Tag],
) -> list[list[str]]:
    """Map each article's tag ids to display names.

    Unknown ids come back verbatim so that broken upstream data shows up in
    the UI instead of failing the read. Each occurrence is logged.
    """
    if isinstance(tag_catalog, Mapping):
        names = dict(tag_catalog)
    else:
        names = {t.id: t.name for t in tag_catalog}

    resolved: list[list[str]] = []
    for tag_ids in article_tag_ids:
        row = []
        for tag_id in tag_ids:
            name = names.get(tag_id)
            if name is None:
                logger.warning(f"Dangling tag reference {tag_id!r}; showing raw id")
                name = str(tag_id)
            row.append(name)
        resolved.append(row)
    return resolved


_engine: AssociationEngine | None = None


def init_association_engine(db: DB, lock_timeout: float = 10.0) -> AssociationEngine:
    """Initialize the global AssociationEngine."""
    global _engine
    _engine = AssociationEngine(db, lock_timeout=lock_timeout)
    return _engine


def get_association_engine() -> AssociationEngine:
    """Get the global AssociationEngine. Must call init_association_engine first."""
    if _engine is None:
        raise RuntimeError("AssociationEngine not initialized. Call init_association_engine first.")
    return _engine
