"""Row-level change notifications pushed to WebSocket subscribers.

Clients subscribe to a table, optionally narrowed with a ``column=eq.value``
filter, and receive INSERT/UPDATE/DELETE events for matching rows they are
allowed to read.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import WebSocket

from medmarket.services.table_registry import Caller, get_table, row_visible

logger = logging.getLogger(__name__)

CHANGE_EVENTS = ("INSERT", "UPDATE", "DELETE")


def _as_text(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_channel_filter(expression: Optional[str]) -> Optional[tuple[str, str]]:
    """Parse ``column=eq.value`` into ``(column, value)``.

    Only equality is supported on channels. Raises ValueError on anything else.
    """
    if not expression:
        return None
    column, sep, rest = expression.partition("=")
    op, dot, value = rest.partition(".")
    if not sep or not dot or not column.strip():
        raise ValueError(f"Invalid filter: {expression}")
    if op != "eq":
        raise ValueError("Only eq filters are supported on realtime channels")
    return column.strip(), value


@dataclass
class Subscription:
    websocket: WebSocket
    caller: Caller
    table: str
    filter: Optional[tuple[str, str]] = None

    def matches(self, record: dict) -> bool:
        if self.filter is None:
            return True
        column, value = self.filter
        return _as_text(record.get(column)) == value


class ChannelManager:
    """
    Tracks table subscriptions per WebSocket and fans change events out.
    A socket may hold several subscriptions (one per table/filter pair).
    """

    def __init__(self):
        # table name -> subscriptions
        self.subscriptions: Dict[str, List[Subscription]] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()

    def subscribe(self, websocket: WebSocket, caller: Caller, table: str, filter_expr: Optional[str] = None) -> Subscription:
        if get_table(table) is None:
            raise ValueError(f"Unknown table: {table}")
        sub = Subscription(
            websocket=websocket,
            caller=caller,
            table=table,
            filter=parse_channel_filter(filter_expr),
        )
        self.subscriptions.setdefault(table, []).append(sub)
        logger.debug(f"User {caller.user_id} subscribed to {table} ({filter_expr or 'all rows'})")
        return sub

    def unsubscribe(self, websocket: WebSocket, table: Optional[str] = None):
        tables = [table] if table else list(self.subscriptions.keys())
        for name in tables:
            remaining = [s for s in self.subscriptions.get(name, []) if s.websocket is not websocket]
            if remaining:
                self.subscriptions[name] = remaining
            else:
                self.subscriptions.pop(name, None)

    def disconnect(self, websocket: WebSocket):
        self.unsubscribe(websocket)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table:
            return len(self.subscriptions.get(table, []))
        return sum(len(subs) for subs in self.subscriptions.values())

    async def publish(self, table: str, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None) -> int:
        """Deliver a change event. Returns the number of sockets it reached."""
        if event_type not in CHANGE_EVENTS:
            raise ValueError(f"Unknown change event: {event_type}")
        spec = get_table(table)
        subs = list(self.subscriptions.get(table, []))
        if not subs or spec is None:
            return 0

        record = new if event_type != "DELETE" else old
        record = record or {}
        if spec.hidden_columns:
            new = {k: v for k, v in (new or {}).items() if k not in spec.hidden_columns} if new else new
            old = {k: v for k, v in (old or {}).items() if k not in spec.hidden_columns} if old else old

        message = {
            "type": "change",
            "table": table,
            "eventType": event_type,
            "new": new,
            "old": old,
        }
        delivered = 0
        dead: List[WebSocket] = []
        for sub in subs:
            if not sub.matches(record) or not row_visible(spec, record, sub.caller):
                continue
            try:
                await sub.websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping realtime subscriber on {table}: {e}")
                dead.append(sub.websocket)

        for ws in dead:
            self.disconnect(ws)
        return delivered


channel_manager = ChannelManager()


async def publish_change(table: str, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None) -> int:
    return await channel_manager.publish(table, event_type, new=new, old=old)
