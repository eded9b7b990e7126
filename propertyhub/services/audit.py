import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models.models import AuditLog, utcnow


def _as_json(snapshot: Any) -> Optional[str]:
    if snapshot is None:
        return None
    # Dates and Decimals in snapshots are written as strings.
    return json.dumps(snapshot, default=str, sort_keys=True)


def audit_log(
    db_session: Session,
    actor_user_id: Optional[int],
    action: str,
    target_entity_type: Optional[str] = None,
    target_entity_id: Optional[str] = None,
    before: Any = None,
    after: Any = None,
) -> AuditLog:
    """Stage an audit entry in the caller's transaction; the caller commits.

    A rolled-back mutation leaves no audit entry.
    """
    entry = AuditLog(
        timestamp=utcnow(),
        actor_user_id=actor_user_id,
        action=action,
        target_entity_type=target_entity_type,
        target_entity_id=target_entity_id,
        before=_as_json(before),
        after=_as_json(after),
    )
    db_session.add(entry)
    db_session.flush()
    return entry
