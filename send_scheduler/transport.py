"""Delivery transport and instance registry used by the dispatch engine."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import aiohttp

from .persistence import Persistence

JsonDict = Dict[str, Any]
DeliveryResult = Tuple[bool, Optional[str]]
DeliverCallable = Callable[[str, str, Optional[JsonDict]], Awaitable[DeliveryResult]]

AVAILABLE_INSTANCE_STATUSES = frozenset({"connected"})


class HttpTransport:
    """Deliver items by posting them to the messaging gateway of their instance.

    The gateway is expected to expose ``POST {gateway_url}/instances/{instance}/send``
    and to answer with a 2xx status when the message was accepted. Anything
    else is reported as a failed attempt; timeouts are enforced by the caller.
    """

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        gateway_token: Optional[str] = None,
        deliver_callable: Optional[DeliverCallable] = None,
    ):
        """Initialise the transport with optional overrides for testing."""
        self.gateway_url = gateway_url
        self.gateway_token = gateway_token
        self.deliver_callable = deliver_callable

    def _endpoint(self, instance_ref: str) -> Optional[str]:
        """Build the send URL for the given instance."""
        if not self.gateway_url:
            return None
        base = self.gateway_url.rstrip("/")
        return f"{base}/instances/{instance_ref}/send"

    async def deliver(self, recipient_ref: str, instance_ref: str, payload: Optional[JsonDict]) -> DeliveryResult:
        """Attempt one delivery, returning ``(ok, error_info)``."""
        if self.deliver_callable is not None:
            return await self.deliver_callable(recipient_ref, instance_ref, payload)
        endpoint = self._endpoint(instance_ref)
        if not endpoint:
            return False, "Gateway URL is not configured"
        headers: Dict[str, str] = {}
        if self.gateway_token:
            headers["Authorization"] = f"Bearer {self.gateway_token}"
        body = {"recipient": recipient_ref, "payload": payload or {}}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(endpoint, json=body, headers=headers or None) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        return False, f"HTTP {resp.status}: {text[:200]}"
        except aiohttp.ClientError as exc:
            return False, f"{type(exc).__name__}: {exc}"
        return True, None


class InstanceRegistry:
    """Read instance health from the ``instances`` table."""

    def __init__(self, persistence: Persistence):
        """Store the persistence helper used to look instances up."""
        self.persistence = persistence

    async def is_available(self, instance_ref: str) -> bool:
        """Return ``True`` when the instance exists and reports a connected status."""
        instance = await self.persistence.get_instance(instance_ref)
        if not instance:
            return False
        return (instance.get("status") or "").lower() in AVAILABLE_INSTANCE_STATUSES
