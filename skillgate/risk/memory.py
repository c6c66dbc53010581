from __future__ import annotations

import re
import uuid
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from skillgate.persistence.models import OrgMemoryModel
from skillgate.persistence.utils import now_utc

_WORD = re.compile(r"[a-z0-9]{3,}")


def add_memory(
    session: Session,
    content: str,
    *,
    tags: Iterable[str] = (),
    category: str = "fact",
    importance: int = 5,
) -> OrgMemoryModel:
    row = OrgMemoryModel(
        id=f"mem-{uuid.uuid4().hex[:16]}",
        category=category,
        content=content,
        tags=sorted({tag.strip().lower() for tag in tags if tag.strip()}),
        importance=importance,
        created_at=now_utc(),
    )
    session.add(row)
    session.flush()
    return row


def _words(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def sensitive_memories(session: Session, text: str, tags: Iterable[str], limit: int = 20) -> list[OrgMemoryModel]:
    """Memories tagged with any sensitive tag, most relevant to ``text`` first.

    Relevance is keyword overlap with the candidate text, then importance.
    """
    wanted = {tag.lower() for tag in tags}
    if not wanted or limit <= 0:
        return []
    rows = session.execute(select(OrgMemoryModel)).scalars().all()
    tagged = [row for row in rows if wanted.intersection(tag.lower() for tag in (row.tags or []))]
    words = _words(text)
    tagged.sort(key=lambda row: (len(words & _words(row.content)), row.importance), reverse=True)
    return tagged[:limit]
