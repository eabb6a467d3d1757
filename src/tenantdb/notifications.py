"""
Change notification hook and channels.

``NotifyHook`` publishes one event per change registered on a committed
scope, named ``<EntityType><Action>`` (e.g. ``OrderUpdated``) unless an
explicit event name is configured.
"""

import functools
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiohttp

from tenantdb.hooks import PostCommitHook
from tenantdb.models import ChangeRecord, ScopeResult

logger = logging.getLogger(__name__)


class NotificationChannel(ABC):
    """Base class for notification channels."""

    @abstractmethod
    async def publish(self, tenant: str, event: str, payload: Dict[str, Any]) -> None:
        """Publish an event for a tenant."""
        pass


class InMemoryNotificationChannel(NotificationChannel):
    """Collects published events (local development and tests)."""

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def publish(self, tenant: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((tenant, event, payload))


class WebhookNotificationChannel(NotificationChannel):
    """Posts events as JSON to a webhook URL.

    Non-2xx responses raise ``aiohttp.ClientResponseError``; the pipeline
    logs the failure.
    """

    def __init__(self, url: str, timeout: float = 10.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}

    async def publish(self, tenant: str, event: str, payload: Dict[str, Any]) -> None:
        body = {
            "tenant": tenant,
            "event": event,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            json_serialize=functools.partial(json.dumps, default=str),
        ) as session:
            async with session.post(self.url, json=body, headers=self.headers) as response:
                response.raise_for_status()

        logger.info(f"Notification sent: {event} for tenant {tenant}")


EventName = Union[str, Callable[[ChangeRecord], str]]


class NotifyHook(PostCommitHook):
    """Publishes one notification per registered change.

    Args:
        channel: Where events are published
        event_name: Fixed event name, or a callable building it from the
            change; defaults to ``<EntityType><Action>``
    """

    def __init__(self, channel: NotificationChannel, event_name: Optional[EventName] = None):
        self.channel = channel
        self.event_name = event_name

    def _event_for(self, change: ChangeRecord) -> str:
        if self.event_name is None:
            return change.event_name
        if callable(self.event_name):
            return self.event_name(change)
        return self.event_name

    async def __call__(self, result: ScopeResult) -> None:
        first_error: Optional[Exception] = None
        for change in result.changes:
            payload = {
                "id": change.entity_id,
                "action": change.action,
                "entity_type": change.entity_type,
                "data": change.after,
                "scope_id": result.scope_id,
            }
            event = self._event_for(change)
            try:
                await self.channel.publish(change.tenant, event, payload)
            except Exception as e:
                logger.error(f"Notification failed: {event} for tenant {change.tenant}: {e}")
                first_error = first_error or e

        if first_error is not None:
            raise first_error
