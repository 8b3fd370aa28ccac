"""
Event publishing.

Events share one envelope::

    {id, tenantId, type, sourceType, sourceId, targetType, targetId, data}

The default publisher appends them to the local ``oob_events`` table. When
EVENTS_WEBHOOK_URL is set they are POSTed there instead. Publishers are
blocking; async routes call them through the threadpool.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

import httpx

from oob import config
from oob.database import db, now_iso
from oob.identifiers import OperationId
from oob.models import EventIdType, EventSource, EventType

logger = logging.getLogger("oob.events")

SERVICE_EVENT_SOURCE = EventSource(source_type=EventIdType.SERVICE, source_id=config.SERVICE_EVENT_ID)


def build_event(
    tenant_id: str,
    event_type: EventType,
    source: EventSource,
    target_id: str,
    data: Optional[Dict[str, Any]] = None,
    target_type: EventIdType = EventIdType.ASSET,
) -> Dict[str, Any]:
    event = {
        "id": OperationId().hex,
        "tenantId": tenant_id,
        "type": EventType(event_type).value,
        "sourceType": EventIdType(source.source_type).value,
        "sourceId": source.source_id,
        "targetType": EventIdType(target_type).value,
        "targetId": target_id,
    }
    if data is not None:
        event["data"] = data
    return event


class EventPublisher:
    def publish(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class EventLogPublisher(EventPublisher):
    """Appends events to the oob_events table."""

    def publish(self, event: Dict[str, Any]) -> None:
        conn = db()
        try:
            conn.execute(
                """
                INSERT INTO oob_events (id, created_at, tenant_id, type, source_type, source_id, target_type, target_id, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event["id"],
                    now_iso(),
                    event["tenantId"],
                    event["type"],
                    event.get("sourceType"),
                    event.get("sourceId"),
                    event.get("targetType"),
                    event.get("targetId"),
                    json.dumps(event.get("data")) if "data" in event else None,
                ),
            )
            conn.commit()
        finally:
            conn.close()


class WebhookEventPublisher(EventPublisher):
    """POSTs each event to an external event bus endpoint."""

    def __init__(self, url: str, timeout: float = config.EVENTS_WEBHOOK_TIMEOUT):
        self.url = url
        self._client = httpx.Client(timeout=timeout)

    def publish(self, event: Dict[str, Any]) -> None:
        response = self._client.post(self.url, json=event)
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def create_publisher() -> EventPublisher:
    if config.EVENTS_WEBHOOK_URL:
        logger.info("Publishing events to webhook %s", config.EVENTS_WEBHOOK_URL)
        return WebhookEventPublisher(config.EVENTS_WEBHOOK_URL)
    return EventLogPublisher()


def publish_event(publisher: EventPublisher, event: Dict[str, Any]) -> bool:
    """Publish without ever raising; failures are logged."""
    try:
        publisher.publish(event)
        return True
    except Exception as e:
        logger.warning("Failed to publish %s event %s: %s", event.get("type"), event.get("id"), e)
        return False


def list_events(
    conn: sqlite3.Connection,
    tenant_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    clauses = []
    values: List[Any] = []
    if tenant_id is not None:
        clauses.append("tenant_id = ?")
        values.append(tenant_id)
    if event_type is not None:
        clauses.append("type = ?")
        values.append(event_type)
    sql = "SELECT * FROM oob_events"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY id ASC"
    rows = conn.execute(sql, values).fetchall()
    return [
        {
            "id": r["id"],
            "tenantId": r["tenant_id"],
            "type": r["type"],
            "sourceType": r["source_type"],
            "sourceId": r["source_id"],
            "targetType": r["target_type"],
            "targetId": r["target_id"],
            "data": json.loads(r["data"]) if r["data"] else None,
        }
        for r in rows
    ]
