from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.core.associations import get_association_engine, resolve_tag_names
from app.core.bulk import get_bulk_coordinator
from app.core.errors import ForbiddenError, LibraryError, NotFoundError
from app.core.models import (
    DEFAULT_HIGHLIGHT_COLOR,
    Article,
    normalize_color,
    parse_status,
    validate_position,
)
from app.core.seed import seed_if_empty
from app.core.settings import Settings
from app.core.storage import get_db, init_db

logger = logging.getLogger(__name__)

app = FastAPI(title="readstack")

ERROR_STATUS = {
    "not_found": 404,
    "forbidden": 403,
    "validation": 400,
    "conflict": 409,
}


@app.on_event("startup")
def _startup() -> None:
    s = Settings.from_env()
    db = init_db()
    if s.seed_on_startup:
        seed_if_empty(db, s)


@app.exception_handler(LibraryError)
async def _library_error(request: Request, exc: LibraryError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, 500),
        content={"success": False, "error": exc.kind, "message": str(exc)},
    )


def current_user(authorization: str | None = Header(default=None)) -> str:
    """Resolve 'Authorization: Bearer <token>' to a user id."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Access token required")
    user_id = get_db().resolve_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


class TagCreate(BaseModel):
    name: str
    color: str | None = None


class TagUpdate(BaseModel):
    name: str | None = None
    color: str | None = None


class StatusUpdate(BaseModel):
    status: str


class FavoriteUpdate(BaseModel):
    # Omitted: toggle the current value
    is_favorite: bool | None = None


class ArticleCreate(BaseModel):
    title: str
    url: str | None = None
    status: str = "inbox"
    is_favorite: bool = False


class HighlightCreate(BaseModel):
    text: str
    start: int
    end: int
    title: str | None = None
    note: str | None = None
    color: str | None = None


class BulkRequest(BaseModel):
    article_ids: list[str] = Field(default_factory=list)


class BulkTagRequest(BulkRequest):
    tag_names: list[str] = Field(default_factory=list)


class BulkStatusRequest(BulkRequest):
    status: str


def _articles_payload(user_id: str, articles: list[Article]) -> list[dict]:
    """Serialize articles with their tag names resolved."""
    catalog = get_db().list_tags(user_id)
    names = resolve_tag_names([a.tags for a in articles], catalog)
    return [a.to_dict(tag_names=n) for a, n in zip(articles, names)]


# ==================== Tags ====================


@app.get("/api/tags")
def api_tags_list(sort: str | None = None, user_id: str = Depends(current_user)):
    """List tags with live article counts.

    Args:
        sort: 'popular', 'alphabetical' or 'recent'
    """
    tags = get_db().list_tags(user_id, sort=sort)
    return {"success": True, "count": len(tags), "data": [t.to_dict() for t in tags]}


@app.post("/api/tags", status_code=201)
def api_tags_create(body: TagCreate, user_id: str = Depends(current_user)):
    tag = get_association_engine().create_tag(user_id, body.name, body.color)
    return {"success": True, "data": tag.to_dict(), "message": "Tag created successfully"}


@app.get("/api/tags/{tag_id}")
def api_tags_get(tag_id: str, user_id: str = Depends(current_user)):
    db = get_db()
    # Both reads under one lock hold
    with db.lock:
        found = db.find_tag(tag_id)
        if found is None:
            raise NotFoundError(f"Tag {tag_id} not found")
        if found.user_id != user_id:
            raise ForbiddenError(f"Tag {tag_id} belongs to another user")
        tag = db.get_tag(user_id, tag_id)
    return {"success": True, "data": tag.to_dict()}


@app.put("/api/tags/{tag_id}")
def api_tags_update(tag_id: str, body: TagUpdate, user_id: str = Depends(current_user)):
    """Rename and/or recolor a tag."""
    tag = get_association_engine().update_tag(user_id, tag_id, name=body.name, color=body.color)
    return {"success": True, "data": tag.to_dict(), "message": "Tag updated successfully"}


@app.delete("/api/tags/{tag_id}")
def api_tags_delete(tag_id: str, user_id: str = Depends(current_user)):
    """Delete a tag. Responds only after every article reference is gone."""
    updated = get_association_engine().delete_tag(user_id, tag_id)
    return {
        "success": True,
        "message": "Tag deleted successfully",
        "data": {"id": tag_id, "articles_updated": updated},
    }


@app.get("/api/tags/{tag_id}/articles")
def api_tags_articles(tag_id: str, user_id: str = Depends(current_user)):
    db = get_db()
    tag = db.get_tag(user_id, tag_id)
    if tag is None:
        raise NotFoundError(f"Tag {tag_id} not found")
    articles = db.articles_with_tag(user_id, tag_id)
    return {
        "success": True,
        "tag": {"id": tag.id, "name": tag.name, "color": tag.color},
        "count": len(articles),
        "data": _articles_payload(user_id, articles),
    }


# ==================== Articles ====================


@app.get("/api/articles")
def api_articles_list(
    status: str | None = None,
    tag: str | None = None,
    favorite: bool | None = None,
    stack: str | None = None,
    q: str | None = None,
    user_id: str = Depends(current_user),
):
    """List articles, optionally filtered by queue, tag id, favorite flag or saved stack."""
    db = get_db()
    if stack:
        saved = db.get_stack(user_id, stack)
        if saved is None:
            raise NotFoundError(f"Stack {stack} not found")
        articles = db.list_articles_for_stack(user_id, saved)
    else:
        articles = db.list_articles(
            user_id,
            status=parse_status(status) if status else None,
            tag_id=tag,
            is_favorite=favorite,
            query=q,
        )
    return {"success": True, "count": len(articles), "data": _articles_payload(user_id, articles)}


@app.post("/api/articles", status_code=201)
def api_articles_create(body: ArticleCreate, user_id: str = Depends(current_user)):
    article = get_db().insert_article(
        user_id=user_id,
        title=body.title,
        url=body.url,
        status=parse_status(body.status),
        is_favorite=body.is_favorite,
    )
    return {"success": True, "data": article.to_dict(tag_names=[])}


@app.get("/api/articles/{article_id}")
def api_articles_get(article_id: str, user_id: str = Depends(current_user)):
    article = get_db().get_article(user_id, article_id)
    if article is None:
        raise NotFoundError(f"Article {article_id} not found")
    return {"success": True, "data": _articles_payload(user_id, [article])[0]}


@app.delete("/api/articles/{article_id}")
def api_articles_delete(article_id: str, user_id: str = Depends(current_user)):
    if not get_db().delete_article(user_id, article_id):
        raise NotFoundError(f"Article {article_id} not found")
    return {"success": True, "data": {"id": article_id}}


@app.patch("/api/articles/{article_id}/status")
def api_articles_status(article_id: str, body: StatusUpdate, user_id: str = Depends(current_user)):
    article, changed = get_bulk_coordinator().update_article(
        user_id, article_id, status=parse_status(body.status)
    )
    return {"success": True, "changed": changed, "data": _articles_payload(user_id, [article])[0]}


@app.patch("/api/articles/{article_id}/favorite")
def api_articles_favorite(
    article_id: str, body: FavoriteUpdate, user_id: str = Depends(current_user)
):
    article, changed = get_bulk_coordinator().update_article(
        user_id,
        article_id,
        is_favorite=body.is_favorite,
        toggle_favorite=body.is_favorite is None,
    )
    return {"success": True, "changed": changed, "data": _articles_payload(user_id, [article])[0]}


@app.post("/api/articles/{article_id}/tags/{tag_id}")
def api_article_tag_add(article_id: str, tag_id: str, user_id: str = Depends(current_user)):
    article, changed = get_association_engine().attach_tag(user_id, article_id, tag_id)
    return {"success": True, "changed": changed, "data": _articles_payload(user_id, [article])[0]}


@app.delete("/api/articles/{article_id}/tags/{tag_id}")
def api_article_tag_remove(article_id: str, tag_id: str, user_id: str = Depends(current_user)):
    article, changed = get_association_engine().detach_tag(user_id, article_id, tag_id)
    return {"success": True, "changed": changed, "data": _articles_payload(user_id, [article])[0]}


# ==================== Highlights ====================


@app.get("/api/articles/{article_id}/highlights")
def api_highlights_list(article_id: str, user_id: str = Depends(current_user)):
    db = get_db()
    if db.get_article(user_id, article_id) is None:
        raise NotFoundError(f"Article {article_id} not found")
    highlights = db.list_highlights(user_id, article_id)
    return {"success": True, "count": len(highlights), "data": [h.to_dict() for h in highlights]}


@app.post("/api/articles/{article_id}/highlights", status_code=201)
def api_highlights_create(
    article_id: str, body: HighlightCreate, user_id: str = Depends(current_user)
):
    db = get_db()
    start, end = validate_position(body.start, body.end)
    color = normalize_color(body.color, default=DEFAULT_HIGHLIGHT_COLOR)
    with db.transaction():
        if db.get_article(user_id, article_id) is None:
            raise NotFoundError(f"Article {article_id} not found")
        highlight = db.insert_highlight(
            article_id=article_id,
            user_id=user_id,
            text=body.text,
            start=start,
            end=end,
            title=body.title,
            note=body.note,
            color=color,
        )
    return {"success": True, "data": highlight.to_dict()}


# ==================== Stacks ====================


@app.get("/api/stacks")
def api_stacks_list(user_id: str = Depends(current_user)):
    stacks = get_db().list_stacks(user_id)
    return {"success": True, "count": len(stacks), "data": [s.to_dict() for s in stacks]}


# ==================== Bulk operations ====================


@app.post("/api/bulk/favorite")
def api_bulk_favorite(body: BulkRequest, user_id: str = Depends(current_user)):
    return get_bulk_coordinator().bulk_favorite(user_id, body.article_ids).to_dict()


@app.post("/api/bulk/unfavorite")
def api_bulk_unfavorite(body: BulkRequest, user_id: str = Depends(current_user)):
    return get_bulk_coordinator().bulk_unfavorite(user_id, body.article_ids).to_dict()


@app.post("/api/bulk/tag")
def api_bulk_tag(body: BulkTagRequest, user_id: str = Depends(current_user)):
    return get_bulk_coordinator().bulk_tag(user_id, body.article_ids, body.tag_names).to_dict()


@app.post("/api/bulk/status")
def api_bulk_status(body: BulkStatusRequest, user_id: str = Depends(current_user)):
    return get_bulk_coordinator().bulk_status_change(user_id, body.article_ids, body.status).to_dict()


@app.post("/api/bulk/advance")
def api_bulk_advance(body: BulkRequest, user_id: str = Depends(current_user)):
    """Move each selected article to the next reading queue."""
    return get_bulk_coordinator().bulk_advance_status(user_id, body.article_ids).to_dict()


@app.post("/api/bulk/delete")
def api_bulk_delete(body: BulkRequest, user_id: str = Depends(current_user)):
    return get_bulk_coordinator().bulk_delete(user_id, body.article_ids).to_dict()


@app.get("/api/stats")
def api_stats(user_id: str = Depends(current_user)):
    return get_db().get_user_stats(user_id)
