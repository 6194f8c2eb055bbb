from __future__ import annotations

import logging
from typing import Any, Dict, List

from database import Notice, list_notices, record_audit_log
from roles import can_access_management, is_system_admin

logger = logging.getLogger(__name__)

RECENT_NOTICE_LIMIT = 5


def _checked(title: str, content: str) -> tuple:
    title = (title or "").strip()
    content = (content or "").strip()
    if not title:
        raise ValueError("Enter a title for the notice.")
    if not content:
        raise ValueError("Enter the notice text.")
    return title, content


def post_notice(session, user: Dict[str, Any], title: str, content: str) -> Notice:
    if not can_access_management(user):
        raise PermissionError("Only managers can post notices.")
    title, content = _checked(title, content)
    notice = Notice(
        title=title,
        content=content,
        branch=user.get("branch"),
        author_id=user.get("id"),
        author_name=user.get("name"),
        author_role=user.get("user_type"),
    )
    session.add(notice)
    session.commit()
    session.refresh(notice)
    logger.info("Notice %s posted by user %s", notice.id, user.get("id"))
    return notice


def _editable(session, user: Dict[str, Any], notice_id: int) -> Notice:
    notice = session.get(Notice, notice_id)
    if not notice:
        raise ValueError(f"Notice with id {notice_id} was not found.")
    if not (is_system_admin(user) or (can_access_management(user) and notice.author_id == user.get("id"))):
        raise PermissionError("Only the author or a system admin can change this notice.")
    return notice


def edit_notice(session, user: Dict[str, Any], notice_id: int, title: str, content: str) -> Notice:
    notice = _editable(session, user, notice_id)
    notice.title, notice.content = _checked(title, content)
    session.commit()
    return notice


def remove_notice(session, user: Dict[str, Any], notice_id: int) -> None:
    notice = _editable(session, user, notice_id)
    session.delete(notice)
    session.commit()
    record_audit_log(session, user.get("id"), "notice_delete", target_type="Notice", target_id=notice_id)


def recent_notices(session, limit: int = RECENT_NOTICE_LIMIT) -> List[Notice]:
    return list_notices(session, limit=limit)
