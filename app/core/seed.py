"""Load a working seed-data directory into the stores."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

from app.core.errors import ValidationError
from app.core.integrity import load_records
from app.core.models import ArticleStatus, normalize_color, normalize_tag_name, parse_status, validate_position
from app.core.parity import DatasetLoadError, check_parity
from app.core.settings import Settings

if TYPE_CHECKING:
    from app.core.storage import DB

logger = logging.getLogger(__name__)


def _seed_tags(db: DB, records: list[dict[str, Any]]) -> dict[str, str]:
    """Insert tags. Returns tag id -> owner for the tags that made it in."""
    owners: dict[str, str] = {}
    for rec in records:
        try:
            name = normalize_tag_name(rec.get("name"))
            try:
                color = normalize_color(rec.get("color"))
            except ValidationError:
                color = normalize_color(None)
            db.insert_tag(
                user_id=str(rec["userId"]),
                name=name,
                color=color,
                tag_id=str(rec["id"]),
                created_at=rec.get("createdAt"),
                updated_at=rec.get("updatedAt"),
            )
            owners[str(rec["id"])] = str(rec["userId"])
        except (KeyError, ValidationError, sqlite3.IntegrityError) as e:
            logger.warning(f"Skipping seed tag {rec.get('id')}: {e}")
    return owners


def _seed_articles(db: DB, records: list[dict[str, Any]], tag_owners: dict[str, str]) -> int:
    count = 0
    for rec in records:
        try:
            user_id = str(rec["userId"])
            tag_ids = []
            for tag_id in rec.get("tags") or []:
                if tag_owners.get(str(tag_id)) == user_id:
                    tag_ids.append(str(tag_id))
                else:
                    logger.warning(f"Seed article {rec.get('id')}: dropping unknown tag {tag_id}")
            try:
                status = parse_status(rec.get("status") or ArticleStatus.INBOX)
            except ValidationError:
                logger.warning(f"Seed article {rec.get('id')}: invalid status {rec.get('status')!r}, using inbox")
                status = ArticleStatus.INBOX
            db.insert_article(
                user_id=user_id,
                title=rec.get("title") or "",
                url=rec.get("url"),
                status=status,
                is_favorite=bool(rec.get("isFavorite")),
                tag_ids=tuple(tag_ids),
                article_id=str(rec["id"]),
                created_at=rec.get("createdAt"),
                updated_at=rec.get("updatedAt"),
            )
            count += 1
        except (KeyError, sqlite3.IntegrityError) as e:
            logger.warning(f"Skipping seed article {rec.get('id')}: {e}")
    return count


def _seed_highlights(db: DB, records: list[dict[str, Any]]) -> int:
    count = 0
    for rec in records:
        position = rec.get("position") or {}
        annotations = rec.get("annotations") or {}
        try:
            start, end = validate_position(position.get("start"), position.get("end"))
            if db.get_article(str(rec["userId"]), str(rec["articleId"])) is None:
                raise ValidationError(f"article {rec['articleId']} not found")
            db.insert_highlight(
                article_id=str(rec["articleId"]),
                user_id=str(rec["userId"]),
                text=rec.get("text") or "",
                start=start,
                end=end,
                title=annotations.get("title"),
                note=annotations.get("note"),
                color=rec.get("color") or "#fef08a",
                highlight_id=str(rec["id"]),
                created_at=rec.get("createdAt"),
                updated_at=rec.get("updatedAt"),
            )
            count += 1
        except (KeyError, ValidationError, sqlite3.IntegrityError) as e:
            logger.warning(f"Skipping seed highlight {rec.get('id')}: {e}")
    return count


def load_seed(db: DB, data_dir: Path) -> dict[str, int]:
    """Insert tags, articles, highlights and stacks from a seed directory.

    Article tag ids that do not resolve to a tag of the same user are dropped,
    so the store never holds a dangling reference.
    """
    data_dir = Path(data_dir)
    tag_owners = _seed_tags(db, load_records(data_dir, "tags") or [])
    articles = _seed_articles(db, load_records(data_dir, "articles") or [], tag_owners)
    highlights = _seed_highlights(db, load_records(data_dir, "highlights") or [])

    stacks = 0
    for rec in load_records(data_dir, "stacks") or []:
        try:
            db.insert_stack(
                name=rec["name"],
                query=rec.get("query") or "",
                filters=rec.get("filters") or {},
                user_id=rec.get("userId"),
                stack_id=str(rec["id"]),
            )
            stacks += 1
        except (KeyError, sqlite3.IntegrityError) as e:
            logger.warning(f"Skipping seed stack {rec.get('id')}: {e}")

    counts = {"tags": len(tag_owners), "articles": articles, "highlights": highlights, "stacks": stacks}
    logger.info(f"Seeded from {data_dir}: {counts}")
    return counts


def seed_if_empty(db: DB, settings: Settings) -> bool:
    """Seed an empty store from DATA_DIR, gated on parity with BASE_DATA_DIR.

    Returns True if data was loaded.
    """
    stats = db.get_stats()
    if stats["articles"] or stats["tags"]:
        logger.info("Store already has data, skipping seed")
        return False

    if settings.verify_parity_before_seed:
        try:
            report = check_parity(
                settings.parity_datasets, Path(settings.base_data_dir), Path(settings.data_dir)
            )
        except DatasetLoadError as e:
            logger.error(f"Parity check could not run, not seeding: {e}")
            return False
        if not report.ok:
            names = ", ".join(r.dataset for r in report.mismatches)
            logger.error(f"Seed data out of sync with base data ({names}), not seeding")
            return False

    load_seed(db, Path(settings.data_dir))
    return True
