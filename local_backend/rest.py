"""
Data endpoint /rest/v1/bookmarks with query-string filters (col=eq.value), order=col.asc|desc, and
representation returns. Row-level policy: callers read, insert and delete only rows where owner_id = their sub.
Committed inserts and deletes are published to the realtime hub.
"""
import logging

from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from local_backend.config import TITLE_MAX_LENGTH
from local_backend.database import get_db
from local_backend.models import Bookmark
from local_backend.realtime import hub
from local_backend.security import caller_user_id, require_apikey, rest_error

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/rest/v1", dependencies=[Depends(require_apikey)])

_COLUMNS = {"id", "owner_id", "url", "title", "created_at"}
_RESERVED_PARAMS = {"select", "order", "limit", "apikey"}
SINGLE_OBJECT = "application/vnd.pgrst.object+json"


def _filtered(request: Request, db: Session, user_id: str):
    """Base query for the caller's rows plus eq. filters from the query string."""
    q = db.query(Bookmark).filter(Bookmark.owner_id == user_id)
    for name, raw in request.query_params.multi_items():
        if name in _RESERVED_PARAMS:
            continue
        if name not in _COLUMNS:
            raise rest_error(400, "PGRST100", f"unknown column {name!r}")
        op, _, value = raw.partition(".")
        if op != "eq":
            raise rest_error(400, "PGRST100", f"unsupported operator {op!r}")
        q = q.filter(getattr(Bookmark, name) == value)
    return q


def _ordered(q, order: str | None):
    if not order:
        return q
    column, _, direction = order.partition(".")
    if column not in _COLUMNS:
        raise rest_error(400, "PGRST100", f"unknown order column {column!r}")
    attr = getattr(Bookmark, column)
    return q.order_by(attr.desc() if direction == "desc" else attr.asc())


def _represent(request: Request, rows: list[dict], status_code: int) -> Response:
    """Honor Prefer: return=representation and the single-object Accept header."""
    prefer = request.headers.get("prefer", "")
    if request.method != "GET" and "return=representation" not in prefer:
        return Response(status_code=204 if request.method == "DELETE" else status_code)
    if SINGLE_OBJECT in request.headers.get("accept", ""):
        if len(rows) != 1:
            raise rest_error(406, "PGRST116", f"JSON object requested, multiple (or no) rows returned ({len(rows)})")
        return JSONResponse(rows[0], status_code=status_code)
    return JSONResponse(rows, status_code=status_code)


def _check_row(row: dict, user_id: str | None) -> None:
    """Column checks, then the insert policy owner_id = caller."""
    title = row.get("title")
    url = row.get("url")
    if not isinstance(url, str) or not url:
        raise rest_error(400, "23502", 'null value in column "url" of relation "bookmarks" violates not-null constraint')
    if not isinstance(title, str) or not title or len(title) > TITLE_MAX_LENGTH:
        raise rest_error(400, "23514", 'new row for relation "bookmarks" violates check constraint "bookmarks_title_check"')
    if user_id is None or row.get("owner_id") != user_id:
        raise rest_error(
            401 if user_id is None else 403,
            "42501",
            'new row violates row-level security policy for table "bookmarks"',
        )


@router.get("/bookmarks")
def list_bookmarks(
    request: Request,
    order: str | None = None,
    limit: int | None = None,
    db: Session = Depends(get_db),
):
    """Rows visible to the caller; anonymous callers see none."""
    user_id = caller_user_id(request)
    if user_id is None:
        return _represent(request, [], 200)
    q = _ordered(_filtered(request, db, user_id), order)
    if limit is not None:
        q = q.limit(max(0, limit))
    return _represent(request, [b.to_dict() for b in q.all()], 200)


@router.post("/bookmarks")
def insert_bookmarks(
    request: Request,
    payload: dict | list = Body(...),
    db: Session = Depends(get_db),
):
    """Insert one row or a batch, all-or-nothing."""
    user_id = caller_user_id(request)
    rows = payload if isinstance(payload, list) else [payload]
    if not rows or not all(isinstance(row, dict) for row in rows):
        raise rest_error(400, "PGRST102", "body must be an object or a non-empty array of objects")
    unknown = {k for row in rows for k in row} - _COLUMNS
    if unknown:
        raise rest_error(400, "PGRST204", f"unknown column(s): {', '.join(sorted(unknown))}")
    for row in rows:
        _check_row(row, user_id)

    created = [
        Bookmark(**{k: v for k, v in row.items() if k in ("id", "owner_id", "url", "title")})
        for row in rows
    ]
    db.add_all(created)
    db.commit()
    records = []
    for b in created:
        db.refresh(b)
        records.append(b.to_dict())
    for record in records:
        hub.publish("INSERT", "bookmarks", record)
    logger.info("Inserted %d bookmark(s) for owner=%s", len(records), user_id)
    return _represent(request, records, 201)


@router.delete("/bookmarks")
def delete_bookmarks(request: Request, db: Session = Depends(get_db)):
    """Delete the caller's rows matching the filters; other owners' rows are invisible, not an error."""
    user_id = caller_user_id(request)
    if user_id is None:
        return _represent(request, [], 200)
    matches = _filtered(request, db, user_id).all()
    records = [b.to_dict() for b in matches]
    for b in matches:
        db.delete(b)
    db.commit()
    for record in records:
        hub.publish("DELETE", "bookmarks", record)
    logger.info("Deleted %d bookmark(s) for owner=%s", len(records), user_id)
    return _represent(request, records, 200)
