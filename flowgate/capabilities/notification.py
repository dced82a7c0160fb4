"""
Flowgate Notifications

Best-effort notification dispatch for step failures and escalations.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Set

import httpx
import structlog

from flowgate.types import NotificationPolicy

logger = structlog.get_logger(__name__)


class Notifier:
    """Base class for notification sinks."""

    async def notify(
        self,
        channels: Sequence[str],
        recipients: Sequence[str],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send a notification."""
        raise NotImplementedError


class LogNotifier(Notifier):
    """Structured logging notification sink."""

    async def notify(
        self,
        channels: Sequence[str],
        recipients: Sequence[str],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        log = structlog.get_logger("flowgate.notification")
        log.info(
            "notification",
            channels=list(channels),
            recipients=list(recipients),
            message=message,
            **(metadata or {}),
        )


class WebhookNotifier(Notifier):
    """Posts notifications as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(
        self,
        channels: Sequence[str],
        recipients: Sequence[str],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = {
            "channels": list(channels),
            "recipients": list(recipients),
            "message": message,
            **(metadata or {}),
        }

        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)

        response.raise_for_status()


class NotificationDispatcher:
    """
    Fire-and-forget notification dispatch.

    Each notification runs in its own task so a slow or failing sink never
    blocks a run or changes its status. Failures are logged and counted.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier if notifier is not None else LogNotifier()
        self._tasks: Set[asyncio.Task] = set()

        self._sent = 0
        self._failed = 0

    def dispatch(
        self,
        policy: Optional[NotificationPolicy],
        message: str,
        **metadata: Any,
    ) -> Optional[asyncio.Task]:
        """Schedule a notification for a step's policy, if it has one."""
        if policy is None or not (policy.channels or policy.recipients):
            return None

        task = asyncio.create_task(
            self._send(list(policy.channels), list(policy.recipients), message, metadata)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(
        self,
        channels: List[str],
        recipients: List[str],
        message: str,
        metadata: Dict[str, Any],
    ) -> None:
        try:
            await self.notifier.notify(channels, recipients, message, metadata)
            self._sent += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed += 1
            logger.warning(
                "notification_failed",
                channels=channels,
                error=str(e),
                **{k: v for k, v in metadata.items() if k in ("run_id", "step_id")},
            )

    async def drain(self) -> None:
        """Wait for in-flight notifications."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "sent": self._sent,
            "failed": self._failed,
            "pending": len(self._tasks),
        }
