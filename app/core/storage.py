from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from app.core.models import (
    DEFAULT_HIGHLIGHT_COLOR,
    DEFAULT_TAG_COLOR,
    Article,
    ArticleStatus,
    Highlight,
    Stack,
    Tag,
    normalize_tag_ids,
    utcnow,
)
from app.core.settings import Settings

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS tags (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  name TEXT NOT NULL,
  color TEXT NOT NULL DEFAULT '#6366f1',
  created_at TEXT,
  updated_at TEXT,
  UNIQUE(user_id, name)
);

-- Articles hold their tag ids as a JSON array; tags keep no reverse index.
CREATE TABLE IF NOT EXISTS articles (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  title TEXT NOT NULL DEFAULT '',
  url TEXT,
  status TEXT NOT NULL DEFAULT 'inbox'
    CHECK (status IN ('inbox', 'daily', 'continue', 'rediscovery', 'archived')),
  is_favorite INTEGER NOT NULL DEFAULT 0,
  tag_ids TEXT NOT NULL DEFAULT '[]',
  created_at TEXT,
  updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_articles_user_status ON articles(user_id, status);

CREATE TABLE IF NOT EXISTS highlights (
  id TEXT PRIMARY KEY,
  article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
  user_id TEXT NOT NULL,
  text TEXT NOT NULL,
  annotation_title TEXT,
  annotation_note TEXT,
  color TEXT NOT NULL DEFAULT '#fef08a',
  position_start INTEGER NOT NULL,
  position_end INTEGER NOT NULL,
  created_at TEXT,
  updated_at TEXT,
  CHECK (position_start >= 0 AND position_start < position_end)
);

CREATE INDEX IF NOT EXISTS idx_highlights_article_id ON highlights(article_id);

-- Saved searches (read-only definitions, user_id NULL = shared)
CREATE TABLE IF NOT EXISTS stacks (
  id TEXT PRIMARY KEY,
  user_id TEXT,
  name TEXT NOT NULL,
  query TEXT NOT NULL DEFAULT '',
  filters_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS api_tokens (
  token TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  created_at TEXT DEFAULT (datetime('now'))
);
"""


@dataclass
class DB:
    conn: sqlite3.Connection
    lock: threading.RLock = field(default_factory=threading.RLock)
    _tx_depth: int = 0

    def init(self) -> None:
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and commit once at the outermost level.

        Everything written inside the block becomes visible together, or is
        rolled back together if the block raises.
        """
        with self.lock:
            self._tx_depth += 1
            try:
                yield self.conn
            except BaseException:
                if self._tx_depth == 1:
                    self.conn.rollback()
                raise
            else:
                if self._tx_depth == 1:
                    self.conn.commit()
            finally:
                self._tx_depth -= 1

    def get_stats(self) -> dict[str, Any]:
        with self.lock:
            counts = {}
            for table in ("articles", "tags", "highlights", "stacks"):
                cur = self.conn.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = cur.fetchone()[0]
            return counts

    def get_user_stats(self, user_id: str) -> dict[str, Any]:
        """Row counts visible to one user (stacks include shared ones)."""
        with self.lock:
            counts = {}
            for table in ("articles", "tags", "highlights"):
                cur = self.conn.execute(f"SELECT COUNT(*) FROM {table} WHERE user_id = ?", (user_id,))
                counts[table] = cur.fetchone()[0]
            cur = self.conn.execute(
                "SELECT COUNT(*) FROM stacks WHERE user_id = ? OR user_id IS NULL", (user_id,)
            )
            counts["stacks"] = cur.fetchone()[0]
            return counts

    # ==================== Tags ====================

    def _tag_usage_counts(self, user_id: str) -> Counter[str]:
        """Count how many of the user's articles reference each tag id (full scan)."""
        counts: Counter[str] = Counter()
        cur = self.conn.execute("SELECT tag_ids FROM articles WHERE user_id = ?", (user_id,))
        for row in cur.fetchall():
            counts.update(normalize_tag_ids(json.loads(row["tag_ids"] or "[]")))
        return counts

    def find_tag(self, tag_id: str) -> Tag | None:
        """Look up a tag regardless of owner (used to tell 'missing' from 'foreign')."""
        with self.lock:
            row = self.conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
            return Tag.from_row(row) if row else None

    def get_tag(self, user_id: str, tag_id: str) -> Tag | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM tags WHERE id = ? AND user_id = ?", (tag_id, user_id)
            ).fetchone()
            if not row:
                return None
            return Tag.from_row(row, self._tag_usage_counts(user_id)[tag_id])

    def get_tag_by_name(self, user_id: str, name: str) -> Tag | None:
        """Get a tag by its normalized name."""
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM tags WHERE user_id = ? AND name = ?", (user_id, name)
            ).fetchone()
            return Tag.from_row(row) if row else None

    def list_tags(self, user_id: str, sort: str | None = None) -> list[Tag]:
        """List the user's tags with live article counts.

        sort: 'popular' (article count desc), 'alphabetical', 'recent'
        (newest first); default is by name.
        """
        with self.lock:
            cur = self.conn.execute(
                "SELECT * FROM tags WHERE user_id = ? ORDER BY name", (user_id,)
            )
            rows = cur.fetchall()
            counts = self._tag_usage_counts(user_id)
        tags = [Tag.from_row(r, counts[r["id"]]) for r in rows]
        if sort == "popular":
            tags.sort(key=lambda t: (-t.article_count, t.name))
        elif sort == "recent":
            tags.sort(key=lambda t: t.updated_at or t.created_at or "", reverse=True)
        return tags

    def insert_tag(
        self,
        *,
        user_id: str,
        name: str,
        color: str = DEFAULT_TAG_COLOR,
        tag_id: str | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
    ) -> Tag:
        """Insert a tag. Raises sqlite3.IntegrityError if the name is taken."""
        now = utcnow()
        tag = Tag(
            id=tag_id or new_id(),
            user_id=user_id,
            name=name,
            color=color,
            created_at=created_at or now,
            updated_at=updated_at or created_at or now,
        )
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO tags (id, user_id, name, color, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (tag.id, tag.user_id, tag.name, tag.color, tag.created_at, tag.updated_at),
            )
        return tag

    def update_tag_row(self, user_id: str, tag_id: str, *, name: str, color: str) -> bool:
        """Rewrite name and color. Raises sqlite3.IntegrityError if the name is taken."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE tags SET name = ?, color = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (name, color, utcnow(), tag_id, user_id),
            )
            return cur.rowcount > 0

    def delete_tag_row(self, user_id: str, tag_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM tags WHERE id = ? AND user_id = ?", (tag_id, user_id)
            )
            return cur.rowcount > 0

    # ==================== Articles ====================

    def find_article(self, article_id: str) -> Article | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM articles WHERE id = ?", (article_id,)
            ).fetchone()
            return Article.from_row(row) if row else None

    def get_article(self, user_id: str, article_id: str) -> Article | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM articles WHERE id = ? AND user_id = ?", (article_id, user_id)
            ).fetchone()
            return Article.from_row(row) if row else None

    def list_articles(
        self,
        user_id: str,
        *,
        status: ArticleStatus | None = None,
        tag_id: str | None = None,
        is_favorite: bool | None = None,
        query: str | None = None,
    ) -> list[Article]:
        sql = "SELECT * FROM articles WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if is_favorite is not None:
            sql += " AND is_favorite = ?"
            params.append(int(is_favorite))
        if query and query.strip():
            sql += " AND title LIKE ?"
            params.append(f"%{query.strip()}%")
        sql += " ORDER BY created_at DESC, id"
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        articles = [Article.from_row(r) for r in rows]
        if tag_id is not None:
            articles = [a for a in articles if tag_id in a.tags]
        return articles

    def list_articles_for_stack(self, user_id: str, stack: Stack) -> list[Article]:
        """Apply a saved search. Filters: status, isFavorite, tag (by name)."""
        filters = stack.filters or {}
        status = ArticleStatus(filters["status"]) if filters.get("status") else None
        favorite = filters.get("isFavorite")
        tag_id = None
        if filters.get("tag"):
            tag = self.get_tag_by_name(user_id, str(filters["tag"]).strip().lower())
            if tag is None:
                return []
            tag_id = tag.id
        return self.list_articles(
            user_id,
            status=status,
            tag_id=tag_id,
            is_favorite=bool(favorite) if favorite is not None else None,
            query=stack.query,
        )

    def articles_with_tag(self, user_id: str, tag_id: str) -> list[Article]:
        """Scan every article of the user for a tag reference. O(articles)."""
        return self.list_articles(user_id, tag_id=tag_id)

    def insert_article(
        self,
        *,
        user_id: str,
        title: str,
        url: str | None = None,
        status: ArticleStatus = ArticleStatus.INBOX,
        is_favorite: bool = False,
        tag_ids: tuple[str, ...] = (),
        article_id: str | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
    ) -> Article:
        now = utcnow()
        article = Article(
            id=article_id or new_id(),
            user_id=user_id,
            title=title,
            url=url,
            status=status,
            is_favorite=is_favorite,
            tags=normalize_tag_ids(tag_ids),
            created_at=created_at or now,
            updated_at=updated_at or created_at or now,
        )
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO articles (id, user_id, title, url, status, is_favorite, tag_ids,
                                      created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    article.id,
                    article.user_id,
                    article.title,
                    article.url,
                    article.status.value,
                    int(article.is_favorite),
                    json.dumps(list(article.tags)),
                    article.created_at,
                    article.updated_at,
                ),
            )
        return article

    def update_article(
        self,
        user_id: str,
        article_id: str,
        *,
        status: ArticleStatus | None = None,
        is_favorite: bool | None = None,
        tag_ids: tuple[str, ...] | None = None,
    ) -> bool:
        """Update the given fields in one statement. Returns True if a row changed."""
        sets = ["updated_at = ?"]
        params: list[Any] = [utcnow()]
        if status is not None:
            sets.append("status = ?")
            params.append(status.value)
        if is_favorite is not None:
            sets.append("is_favorite = ?")
            params.append(int(is_favorite))
        if tag_ids is not None:
            sets.append("tag_ids = ?")
            params.append(json.dumps(list(normalize_tag_ids(tag_ids))))
        params.extend([article_id, user_id])
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE articles SET {', '.join(sets)} WHERE id = ? AND user_id = ?",
                params,
            )
            return cur.rowcount > 0

    def delete_article(self, user_id: str, article_id: str) -> bool:
        """Delete an article and its highlights. Tags are left alone."""
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM highlights WHERE article_id = ? AND user_id = ?",
                (article_id, user_id),
            )
            cur = conn.execute(
                "DELETE FROM articles WHERE id = ? AND user_id = ?", (article_id, user_id)
            )
            return cur.rowcount > 0

    # ==================== Highlights ====================

    def insert_highlight(
        self,
        *,
        article_id: str,
        user_id: str,
        text: str,
        start: int,
        end: int,
        title: str | None = None,
        note: str | None = None,
        color: str = DEFAULT_HIGHLIGHT_COLOR,
        highlight_id: str | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
    ) -> Highlight:
        now = utcnow()
        highlight = Highlight(
            id=highlight_id or new_id(),
            article_id=article_id,
            user_id=user_id,
            text=text,
            start=start,
            end=end,
            title=title,
            note=note,
            color=color,
            created_at=created_at or now,
            updated_at=updated_at or created_at or now,
        )
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO highlights (id, article_id, user_id, text, annotation_title,
                                        annotation_note, color, position_start, position_end,
                                        created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    highlight.id,
                    highlight.article_id,
                    highlight.user_id,
                    highlight.text,
                    highlight.title,
                    highlight.note,
                    highlight.color,
                    highlight.start,
                    highlight.end,
                    highlight.created_at,
                    highlight.updated_at,
                ),
            )
        return highlight

    def list_highlights(self, user_id: str, article_id: str) -> list[Highlight]:
        with self.lock:
            cur = self.conn.execute(
                """
                SELECT * FROM highlights
                WHERE article_id = ? AND user_id = ?
                ORDER BY position_start, id
                """,
                (article_id, user_id),
            )
            return [Highlight.from_row(r) for r in cur.fetchall()]

    # ==================== Stacks ====================

    def insert_stack(
        self,
        *,
        name: str,
        query: str = "",
        filters: dict[str, Any] | None = None,
        user_id: str | None = None,
        stack_id: str | None = None,
    ) -> Stack:
        stack = Stack(
            id=stack_id or new_id(),
            name=name,
            query=query or "",
            filters=filters or {},
            user_id=user_id,
        )
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO stacks (id, user_id, name, query, filters_json) VALUES (?, ?, ?, ?, ?)",
                (stack.id, stack.user_id, stack.name, stack.query, json.dumps(stack.filters)),
            )
        return stack

    def list_stacks(self, user_id: str) -> list[Stack]:
        """Stacks owned by the user plus shared ones."""
        with self.lock:
            cur = self.conn.execute(
                "SELECT * FROM stacks WHERE user_id = ? OR user_id IS NULL ORDER BY name",
                (user_id,),
            )
            return [Stack.from_row(r) for r in cur.fetchall()]

    def get_stack(self, user_id: str, stack_id: str) -> Stack | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM stacks WHERE id = ? AND (user_id = ? OR user_id IS NULL)",
                (stack_id, user_id),
            ).fetchone()
            return Stack.from_row(row) if row else None

    # ==================== API tokens ====================

    def save_api_token(self, token: str, user_id: str) -> None:
        """Register (or re-point) a bearer token for a user."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO api_tokens (token, user_id) VALUES (?, ?)
                ON CONFLICT(token) DO UPDATE SET user_id = excluded.user_id
                """,
                (token, user_id),
            )

    def resolve_token(self, token: str) -> str | None:
        """Return the user id for a bearer token, or None."""
        with self.lock:
            row = self.conn.execute(
                "SELECT user_id FROM api_tokens WHERE token = ?", (token,)
            ).fetchone()
            return row["user_id"] if row else None


_db: DB | None = None


def init_db(db_path: str | None = None) -> DB:
    global _db
    from app.core.associations import init_association_engine
    from app.core.bulk import init_bulk_coordinator

    s = Settings.from_env()
    path = db_path or s.db_path
    if path != ":memory:" and os.path.dirname(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    _db = DB(conn=conn)
    _db.init()

    for token, user_id in s.token_map().items():
        _db.save_api_token(token, user_id)

    # Services share the same DB and its locks
    engine = init_association_engine(_db, lock_timeout=s.lock_timeout_seconds)
    init_bulk_coordinator(_db, engine)
    return _db


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
