"""Tests for bulk.py"""

import sqlite3

import pytest

from app.core.associations import AssociationEngine
from app.core.bulk import BulkCoordinator, BulkOperation, BulkResult, ItemOutcome, clean_tag_names
from app.core.errors import NotFoundError, ValidationError
from app.core.models import ArticleStatus
from app.core.storage import DB


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    database = DB(conn=conn)
    database.init()
    return database


@pytest.fixture
def bulk(db):
    return BulkCoordinator(db, AssociationEngine(db, lock_timeout=2.0))


@pytest.fixture
def articles(db):
    """Three articles for user-1 in different queues, one for user-2."""
    db.insert_article(user_id="user-1", title="One", article_id="A1")
    db.insert_article(user_id="user-1", title="Two", article_id="A2", status=ArticleStatus.CONTINUE)
    db.insert_article(user_id="user-1", title="Three", article_id="A3", status=ArticleStatus.ARCHIVED)
    db.insert_article(user_id="user-2", title="Theirs", article_id="B1")
    return ["A1", "A2", "A3"]


class TestBulkResult:
    def test_counts_and_dict(self):
        result = BulkResult(
            operation=BulkOperation.FAVORITE,
            outcomes=[
                ItemOutcome("a", ok=True, changed=True),
                ItemOutcome("b", ok=True),
                ItemOutcome("c", ok=False, error="not_found", message="gone"),
            ],
        )
        assert (result.succeeded, result.failed, result.changed) == (2, 1, 1)
        d = result.to_dict()
        assert d["operation"] == "favorite"
        assert d["results"][2] == {
            "article_id": "c", "ok": False, "changed": False,
            "error": "not_found", "message": "gone",
        }


class TestSelection:
    def test_empty_selection_aborts(self, bulk):
        with pytest.raises(ValidationError):
            bulk.bulk_favorite("user-1", [])

    def test_blank_ids_only_aborts(self, bulk):
        with pytest.raises(ValidationError):
            bulk.bulk_delete("user-1", ["", "  "])

    def test_duplicates_processed_once(self, db, bulk, articles):
        result = bulk.bulk_favorite("user-1", ["A1", "A1", "A2"])
        assert [o.article_id for o in result.outcomes] == ["A1", "A2"]


class TestFavorite:
    def test_favorite_and_unfavorite(self, db, bulk, articles):
        result = bulk.bulk_favorite("user-1", articles)
        assert result.succeeded == 3
        assert all(db.get_article("user-1", a).is_favorite for a in articles)

        result = bulk.bulk_unfavorite("user-1", ["A1"])
        assert result.outcomes[0].changed is True
        assert db.get_article("user-1", "A1").is_favorite is False

    def test_already_favorite_unchanged(self, db, bulk, articles):
        bulk.bulk_favorite("user-1", ["A1"])
        result = bulk.bulk_favorite("user-1", ["A1"])
        assert result.outcomes[0].ok is True
        assert result.outcomes[0].changed is False

    def test_partial_failure_continues(self, db, bulk, articles):
        result = bulk.bulk_favorite("user-1", ["A1", "missing", "B1", "A2"])

        assert [o.ok for o in result.outcomes] == [True, False, False, True]
        assert result.outcomes[1].error == "not_found"
        assert result.outcomes[2].error == "not_found"
        assert db.get_article("user-1", "A2").is_favorite is True
        assert db.get_article("user-2", "B1").is_favorite is False


class TestStatus:
    def test_status_change(self, db, bulk, articles):
        result = bulk.bulk_status_change("user-1", articles, "daily")
        assert result.succeeded == 3
        assert {db.get_article("user-1", a).status for a in articles} == {ArticleStatus.DAILY}

    def test_invalid_status_aborts(self, db, bulk, articles):
        with pytest.raises(ValidationError):
            bulk.bulk_status_change("user-1", articles, "later")
        assert db.get_article("user-1", "A1").status == ArticleStatus.INBOX

    def test_advance(self, db, bulk, articles):
        result = bulk.bulk_advance_status("user-1", articles)

        assert db.get_article("user-1", "A1").status == ArticleStatus.DAILY
        assert db.get_article("user-1", "A2").status == ArticleStatus.REDISCOVERY
        assert db.get_article("user-1", "A3").status == ArticleStatus.ARCHIVED
        assert result.failed == 0

    def test_advance_archived_is_success_without_change(self, db, bulk, articles):
        before = db.get_article("user-1", "A3")
        result = bulk.bulk_advance_status("user-1", ["A3"])

        outcome = result.outcomes[0]
        assert outcome.ok is True
        assert outcome.changed is False
        assert outcome.error is None
        assert db.get_article("user-1", "A3") == before


class TestBulkTag:
    def test_duplicate_names_create_one_tag(self, db, bulk, articles):
        result = bulk.bulk_tag("user-1", ["A1", "A2"], ["design", "design"])

        tags = db.list_tags("user-1")
        assert [t.name for t in tags] == ["design"]
        assert len(result.created_tags) == 1
        assert db.get_article("user-1", "A1").tags == (tags[0].id,)
        assert db.get_article("user-1", "A2").tags == (tags[0].id,)

    def test_reuses_existing_tag_case_insensitive(self, db, bulk, articles):
        existing = db.insert_tag(user_id="user-1", name="design")
        result = bulk.bulk_tag("user-1", ["A1"], ["  Design  ", "UX"])

        assert [t.name for t in result.created_tags] == ["ux"]
        article = db.get_article("user-1", "A1")
        assert existing.id in article.tags
        assert len(article.tags) == 2

    def test_already_tagged_reports_unchanged(self, db, bulk, articles):
        bulk.bulk_tag("user-1", ["A1"], ["design"])
        result = bulk.bulk_tag("user-1", ["A1"], ["design"])
        assert result.outcomes[0].ok is True
        assert result.outcomes[0].changed is False

    def test_no_usable_names_aborts(self, db, bulk, articles):
        with pytest.raises(ValidationError):
            bulk.bulk_tag("user-1", ["A1"], ["", "   "])
        assert db.list_tags("user-1") == []

    def test_missing_article_reported(self, db, bulk, articles):
        result = bulk.bulk_tag("user-1", ["A1", "gone"], ["design"])
        assert [o.ok for o in result.outcomes] == [True, False]

    def test_tag_deleted_after_resolve_leaves_article_untouched(self, db, bulk, articles, monkeypatch):
        """All tags land on an article together, or none do."""
        engine = bulk.engine
        resolve = engine.resolve_or_create_tag

        def resolve_then_delete(user_id, name):
            tag, created = resolve(user_id, name)
            if name == "b":
                engine.delete_tag(user_id, tag.id)
            return tag, created

        monkeypatch.setattr(engine, "resolve_or_create_tag", resolve_then_delete)
        before = db.get_article("user-1", "A1")

        result = bulk.bulk_tag("user-1", ["A1"], ["a", "b"])

        outcome = result.outcomes[0]
        assert outcome.ok is False
        assert outcome.changed is False
        assert outcome.error == "not_found"
        assert db.get_article("user-1", "A1") == before


class TestUpdateArticle:
    def test_set_status_returns_article(self, db, bulk, articles):
        article, changed = bulk.update_article("user-1", "A1", status=ArticleStatus.DAILY)
        assert changed is True
        assert article.status == ArticleStatus.DAILY
        assert db.get_article("user-1", "A1") == article

    def test_same_value_is_unchanged(self, db, bulk, articles):
        before = db.get_article("user-1", "A1")
        article, changed = bulk.update_article("user-1", "A1", status=ArticleStatus.INBOX)
        assert changed is False
        assert article == before

    def test_toggle_favorite(self, db, bulk, articles):
        article, _ = bulk.update_article("user-1", "A1", toggle_favorite=True)
        assert article.is_favorite is True
        article, _ = bulk.update_article("user-1", "A1", toggle_favorite=True)
        assert article.is_favorite is False

    def test_foreign_article_not_found(self, bulk, articles):
        with pytest.raises(NotFoundError):
            bulk.update_article("user-1", "B1", is_favorite=True)


class TestBulkDelete:
    def test_deletes_articles_and_highlights_not_tags(self, db, bulk, articles):
        tag = db.insert_tag(user_id="user-1", name="keep")
        db.update_article("user-1", "A1", tag_ids=(tag.id,))
        db.insert_highlight(article_id="A1", user_id="user-1", text="hi", start=0, end=2)

        result = bulk.bulk_delete("user-1", ["A1", "A2", "B1"])

        assert [o.ok for o in result.outcomes] == [True, True, False]
        assert db.get_article("user-1", "A1") is None
        assert db.list_highlights("user-1", "A1") == []
        assert db.get_article("user-2", "B1") is not None
        assert db.find_tag(tag.id) is not None


def test_clean_tag_names():
    assert clean_tag_names([" A ", "a", "", None, "b"]) == ["a", "b"]
