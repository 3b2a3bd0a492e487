"""Referential integrity audit for a seed data directory.

Checks, per directory:
- id uniqueness in each dataset
- owner references (userId) against the users dataset, when present
- article tag ids against tags of the same user
- highlight -> article references, offsets and text vs article content
- stored tag articleCount vs actual usage
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from app.core.parity import DatasetLoadError, EXIT_LOAD_ERROR, EXIT_MISMATCH, EXIT_OK, load_dataset
from app.core.settings import Settings

logger = logging.getLogger(__name__)

DATASETS = ("users", "feeds", "articles", "tags", "highlights")


def records_of(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Records of a dataset file: the first exported list."""
    for value in data.values():
        if isinstance(value, list):
            return [r for r in value if isinstance(r, dict)]
    return []


def load_records(data_dir: Path, dataset: str) -> list[dict[str, Any]] | None:
    """Records for a dataset, or None when the directory has no such file."""
    path = Path(data_dir) / f"{dataset}.json"
    if not path.exists():
        return None
    return records_of(load_dataset(path))


@dataclass
class IntegrityIssue:
    category: str  # duplicate_id, missing_user, missing_tag, missing_article, invalid_position, text_mismatch, tag_count
    dataset: str
    record_id: str | None
    detail: str

    def __str__(self) -> str:
        return f"[{self.category}] {self.dataset}/{self.record_id}: {self.detail}"


@dataclass
class IntegrityReport:
    totals: dict[str, int] = field(default_factory=dict)
    issues: list[IntegrityIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def by_category(self) -> dict[str, int]:
        return dict(Counter(i.category for i in self.issues))


def _audit_uniqueness(report: IntegrityReport, dataset: str, items: list[dict[str, Any]]) -> None:
    counts = Counter(str(item.get("id")) for item in items)
    for record_id, n in counts.items():
        if n > 1:
            report.issues.append(
                IntegrityIssue("duplicate_id", dataset, record_id, f"id appears {n} times")
            )


def _audit_highlight(
    report: IntegrityReport, highlight: dict[str, Any], article: dict[str, Any]
) -> None:
    hid = highlight.get("id")
    position = highlight.get("position") or {}
    start, end = position.get("start"), position.get("end")
    content = article.get("content")
    valid = (
        isinstance(start, int)
        and isinstance(end, int)
        and not isinstance(start, bool)
        and not isinstance(end, bool)
        and 0 <= start < end
        and (content is None or end <= len(content))
    )
    if not valid:
        report.issues.append(
            IntegrityIssue(
                "invalid_position", "highlights", hid,
                f"position [{start}, {end}] invalid for article {article.get('id')}",
            )
        )
        return
    if content is not None and highlight.get("text") != content[start:end]:
        report.issues.append(
            IntegrityIssue(
                "text_mismatch", "highlights", hid,
                f"expected {content[start:end]!r}, got {highlight.get('text')!r}",
            )
        )


def audit_directory(data_dir: Path) -> IntegrityReport:
    """Run every integrity check over one seed directory."""
    report = IntegrityReport()
    loaded = {name: load_records(data_dir, name) for name in DATASETS}
    for name, items in loaded.items():
        if items is not None:
            report.totals[name] = len(items)
            _audit_uniqueness(report, name, items)

    users = loaded["users"]
    articles = loaded["articles"] or []
    tags = loaded["tags"] or []
    highlights = loaded["highlights"] or []

    if users is not None:
        user_ids = {u.get("id") for u in users}
        for name in ("feeds", "articles", "tags", "highlights"):
            for item in loaded[name] or []:
                if item.get("userId") not in user_ids:
                    report.issues.append(
                        IntegrityIssue("missing_user", name, item.get("id"), f"user {item.get('userId')} not found")
                    )

    tag_owner = {t.get("id"): t.get("userId") for t in tags}
    usage: Counter[str] = Counter()
    for article in articles:
        for tag_id in article.get("tags") or []:
            usage[tag_id] += 1
            if tag_id not in tag_owner:
                report.issues.append(
                    IntegrityIssue("missing_tag", "articles", article.get("id"), f"tag {tag_id} not found")
                )
            elif tag_owner[tag_id] != article.get("userId"):
                report.issues.append(
                    IntegrityIssue(
                        "missing_tag", "articles", article.get("id"),
                        f"tag {tag_id} belongs to {tag_owner[tag_id]}",
                    )
                )

    articles_by_id = {a.get("id"): a for a in articles}
    for highlight in highlights:
        article = articles_by_id.get(highlight.get("articleId"))
        if article is None:
            report.issues.append(
                IntegrityIssue(
                    "missing_article", "highlights", highlight.get("id"),
                    f"article {highlight.get('articleId')} not found",
                )
            )
            continue
        _audit_highlight(report, highlight, article)

    for tag in tags:
        stored = tag.get("articleCount")
        actual = usage[tag.get("id")]
        if stored is not None and stored != actual:
            report.issues.append(
                IntegrityIssue("tag_count", "tags", tag.get("id"), f"stored={stored}, actual={actual}")
            )

    return report


def main(argv: list[str] | None = None) -> int:
    s = Settings.from_env()
    parser = argparse.ArgumentParser(description="Audit referential integrity of a seed directory.")
    parser.add_argument("data_dir", nargs="?", default=s.data_dir)
    parser.add_argument("--limit", type=int, default=20, help="max issues to print")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.ERROR, format="%(levelname)s %(name)s: %(message)s")
    try:
        report = audit_directory(Path(args.data_dir))
    except DatasetLoadError as e:
        print(f"ERROR: {e}")
        return EXIT_LOAD_ERROR

    for name, total in report.totals.items():
        print(f"{name:<12} total={total}")
    if report.ok:
        print("\nAll integrity checks passed.")
        return EXIT_OK

    print(f"\n{len(report.issues)} issue(s): {report.by_category()}")
    for issue in report.issues[: args.limit]:
        print(f"  {issue}")
    return EXIT_MISMATCH


if __name__ == "__main__":
    sys.exit(main())
