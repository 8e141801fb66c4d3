# relaybot/inbox.py

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from relaybot.entities import QueueMessage


def send_queue_message(
    session_factory: sessionmaker,
    sender_id: str,
    receiver_id: str,
    msg_type: str,
    payload: Dict[str, Any],
) -> str:
    session = session_factory()
    try:
        message = QueueMessage(
            sender_id=str(sender_id),
            receiver_id=str(receiver_id),
            type=msg_type,
            payload=payload,
        )
        session.add(message)
        session.commit()
        return message.id
    finally:
        session.close()


def claim_queue_messages(
    session_factory: sessionmaker,
    receiver_id: str,
    limit: int,
    include_types: Optional[Iterable[str]] = None,
    exclude_types: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Take up to `limit` of the oldest messages addressed to `receiver_id`.

    Claimed rows are deleted in the same transaction. Rows locked by another
    poller are skipped (FOR UPDATE SKIP LOCKED) where the database supports it.
    """
    if limit <= 0:
        return []

    session = session_factory()
    try:
        query = session.query(QueueMessage).filter(QueueMessage.receiver_id == str(receiver_id))
        if include_types is not None:
            query = query.filter(QueueMessage.type.in_(list(include_types)))
        if exclude_types is not None:
            query = query.filter(QueueMessage.type.notin_(list(exclude_types)))
        rows = (
            query.order_by(QueueMessage.created_at.asc())
            .with_for_update(skip_locked=True)
            .limit(limit)
            .all()
        )

        jobs = [
            {
                "id": r.id,
                "sender_id": r.sender_id,
                "receiver_id": r.receiver_id,
                "type": r.type,
                "payload": r.payload,
            }
            for r in rows
        ]

        for r in rows:
            session.delete(r)

        session.commit()
    finally:
        session.close()

    return jobs
