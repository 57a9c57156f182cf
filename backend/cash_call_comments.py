"""
Cash Call Comments

Discussion threads attached to a cash call. A comment is only reachable through
its cash call, so the cash call visibility scope gates every operation: ids the
actor cannot see read as not found, exactly as for the cash call itself.

- Internal comments are hidden from actors without read_internal_comments
- Replies are one level deep and inherit the parent's internal flag
- Only the author edits; the author or a moderator deletes (with its replies)
"""

from typing import Optional, List, Dict, Any, Union
import logging

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

import models
from rbac_service import Actor, can
from visibility import is_visible
from audit_service import utcnow, log_cash_call_action
from cash_call_errors import ValidationError, Forbidden, NotFound
from cash_call_service import parse_input

logger = logging.getLogger(__name__)


class CommentInput(BaseModel):
    content: str = Field(..., max_length=2000)
    is_internal: bool = False
    parent_comment_id: Optional[int] = None

    class Config:
        extra = "ignore"

    @field_validator("content")
    def validate_content(cls, v):
        text = v.strip()
        if not text:
            raise ValueError("content must not be empty")
        return text


class CommentUpdate(BaseModel):
    content: str = Field(..., max_length=2000)

    class Config:
        extra = "forbid"

    @field_validator("content")
    def validate_content(cls, v):
        text = v.strip()
        if not text:
            raise ValueError("content must not be empty")
        return text


def _visible_cash_call(db: Session, actor: Actor, cash_call_id: str) -> models.CashCall:
    cash_call = db.get(models.CashCall, cash_call_id) if cash_call_id else None
    if cash_call is None or not is_visible(actor, cash_call):
        raise NotFound()
    return cash_call


def _can_read(actor: Actor, comment: models.CashCallComment) -> bool:
    return not comment.is_internal or can(actor, "read_internal_comments")


def _visible_comment(db: Session, actor: Actor, cash_call: models.CashCall, comment_id: int) -> models.CashCallComment:
    comment = db.get(models.CashCallComment, comment_id) if comment_id is not None else None
    if comment is None or comment.cash_call_id != cash_call.id or not _can_read(actor, comment):
        raise NotFound("Comment not found")
    return comment


# ═══════════════════════════════════════════════════════════════════════════════
# READS
# ═══════════════════════════════════════════════════════════════════════════════

def list_comments(db: Session, actor: Actor, cash_call_id: str) -> List[models.CashCallComment]:
    """Comments on a cash call, oldest first."""
    cash_call = _visible_cash_call(db, actor, cash_call_id)
    query = db.query(models.CashCallComment).filter(models.CashCallComment.cash_call_id == cash_call.id)
    if not can(actor, "read_internal_comments"):
        query = query.filter(models.CashCallComment.is_internal.is_(False))
    return query.order_by(models.CashCallComment.created_at.asc(), models.CashCallComment.id.asc()).all()


# ═══════════════════════════════════════════════════════════════════════════════
# WRITES
# ═══════════════════════════════════════════════════════════════════════════════

def create_comment(
    db: Session,
    actor: Actor,
    cash_call_id: str,
    data: Union[CommentInput, Dict[str, Any]]
) -> models.CashCallComment:
    """
    Post a comment or a reply.

    Raises:
        NotFound, Forbidden, ValidationError
    """
    cash_call = _visible_cash_call(db, actor, cash_call_id)
    if not can(actor, "comment"):
        logger.warning(f"Actor {actor.id} ({actor.role}) denied comment on cash call {cash_call_id}")
        raise Forbidden()

    data = parse_input(CommentInput, data)
    if data.is_internal and not can(actor, "read_internal_comments"):
        raise Forbidden()

    is_internal = data.is_internal
    if data.parent_comment_id is not None:
        try:
            parent = _visible_comment(db, actor, cash_call, data.parent_comment_id)
        except NotFound:
            raise ValidationError(f"Comment {data.parent_comment_id} is not on this cash call")
        if parent.parent_comment_id is not None:
            raise ValidationError("Replies cannot be nested")
        is_internal = is_internal or parent.is_internal

    now = utcnow()
    comment = models.CashCallComment(
        cash_call_id=cash_call.id,
        parent_comment_id=data.parent_comment_id,
        author_id=actor.id,
        author_role=actor.role,
        content=data.content,
        is_internal=is_internal,
        created_at=now,
        updated_at=now,
    )
    db.add(comment)
    db.flush()

    log_cash_call_action(
        db, actor, "comment_created", cash_call,
        changes={
            "comment_id": {"old": None, "new": comment.id},
            "is_internal": {"old": None, "new": is_internal},
        }
    )
    db.commit()
    db.refresh(comment)

    logger.info(f"Comment {comment.id} added to cash call {cash_call.call_number} by {actor.id}")
    return comment


def update_comment(
    db: Session,
    actor: Actor,
    cash_call_id: str,
    comment_id: int,
    changes: Union[CommentUpdate, Dict[str, Any]]
) -> models.CashCallComment:
    """Edit the text of one of the actor's own comments."""
    cash_call = _visible_cash_call(db, actor, cash_call_id)
    comment = _visible_comment(db, actor, cash_call, comment_id)
    if not can(actor, "comment") or comment.author_id != actor.id:
        logger.warning(f"Actor {actor.id} denied edit of comment {comment_id}")
        raise Forbidden()

    data = parse_input(CommentUpdate, changes)
    if data.content == comment.content:
        return comment

    old_content = comment.content
    comment.content = data.content
    comment.updated_at = utcnow()
    log_cash_call_action(
        db, actor, "comment_updated", cash_call,
        changes={"content": {"old": old_content, "new": comment.content}},
        notes=f"comment {comment.id}"
    )
    db.commit()
    db.refresh(comment)
    return comment


def delete_comment(db: Session, actor: Actor, cash_call_id: str, comment_id: int) -> None:
    """Remove a comment and any replies to it."""
    cash_call = _visible_cash_call(db, actor, cash_call_id)
    comment = _visible_comment(db, actor, cash_call, comment_id)
    is_author = can(actor, "comment") and comment.author_id == actor.id
    if not (is_author or can(actor, "moderate_comments")):
        logger.warning(f"Actor {actor.id} denied delete of comment {comment_id}")
        raise Forbidden()

    replies = db.query(models.CashCallComment).filter(
        models.CashCallComment.parent_comment_id == comment.id
    ).all()
    for reply in replies:
        db.delete(reply)
    db.flush()
    db.delete(comment)

    log_cash_call_action(
        db, actor, "comment_deleted", cash_call,
        changes={"comment_id": {"old": comment.id, "new": None}},
        notes=f"{len(replies)} replies removed" if replies else None
    )
    db.commit()

    logger.info(f"Comment {comment_id} on cash call {cash_call.call_number} deleted by {actor.id}")
