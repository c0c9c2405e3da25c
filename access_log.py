"""
Access ledger: append-only record of operations per stash.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from errors import ConflictError, ValidationError
from models import ACCESS_SOURCES, AccessLog, Stash, utcnow

logger = logging.getLogger(__name__)

MAX_ACTION_LENGTH = 100
MAX_USER_AGENT_LENGTH = 500


def log_access(store, stash_id: str, source: str, action: str = "read",
               ip: Optional[str] = None, user_agent: Optional[str] = None) -> bool:
    """
    Append one ledger entry in its own transaction.

    Logging is best effort: a storage failure, or a stash deleted in the
    meantime, is logged and reported as False without raising, so it can
    never fail the operation being recorded.

    Raises:
        ValidationError: If ``source`` is not ui, api or mcp
    """
    if source not in ACCESS_SOURCES:
        raise ValidationError(f"Invalid source {source!r}")
    entry = AccessLog(
        stash_id=stash_id,
        source=source,
        action=(action or "read")[:MAX_ACTION_LENGTH],
        ip=ip,
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
        timestamp=utcnow(),
    )
    try:
        with store.transaction() as session:
            if session.get(Stash, stash_id) is None:
                logger.debug("Access to missing stash %s not logged", stash_id)
                return False
            session.add(entry)
    except (SQLAlchemyError, ConflictError) as exc:
        logger.warning("Failed to log access to %s (%s %s): %s", stash_id, source, action, exc)
        return False
    return True


def get_access_log(store, stash_id: str, limit: Optional[int] = None) -> List[Dict]:
    """Ledger entries for one stash, most recent first."""
    if limit is None:
        limit = store.config.ACCESS_LOG_LIMIT
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer")
    with store.session() as session:
        rows = session.scalars(
            select(AccessLog)
            .where(AccessLog.stash_id == stash_id)
            .order_by(AccessLog.timestamp.desc(), AccessLog.id.desc())
            .limit(limit)
        ).all()
        return [row.to_dict() for row in rows]
