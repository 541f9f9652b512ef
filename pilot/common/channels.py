"""Outbound channel dispatch.

Short channels (SMS, voice) receive a truncated summary and the full text is
also sent on the default channel. Delivery failures are logged, never retried.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pilot.common.protocol import InputChannel

logger = logging.getLogger(__name__)

SMS_LIMIT = 300
VOICE_LIMIT = 500
SHORT_CHANNELS = {InputChannel.SMS: SMS_LIMIT, InputChannel.VOICE: VOICE_LIMIT}


class ChannelTransport(Protocol):
    async def send(self, channel: InputChannel, destination: str, text: str) -> None: ...


def summarize(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[: limit - 3].rsplit(" ", 1)[0]
    return cut + "..."


class ChannelDispatcher:
    def __init__(self, transport: ChannelTransport, default_channel: InputChannel = InputChannel.EMAIL,
                 default_destinations: dict[str, str] | None = None):
        self.transport = transport
        self.default_channel = default_channel
        # owner_id → address on the default channel
        self.default_destinations = default_destinations or {}

    async def send_via_channel(self, channel: InputChannel, owner_id: str, destination: str, text: str) -> bool:
        """Deliver *text* to *destination*. Returns False if any delivery failed."""
        limit = SHORT_CHANNELS.get(channel)
        if limit is None:
            return await self._deliver(channel, destination, text)

        ok = await self._deliver(channel, destination, summarize(text, limit))
        full_dest = self.default_destinations.get(owner_id)
        if full_dest and len(text) > limit:
            ok = await self._deliver(self.default_channel, full_dest, text) and ok
        return ok

    async def _deliver(self, channel: InputChannel, destination: str, text: str) -> bool:
        try:
            await self.transport.send(channel, destination, text)
            return True
        except Exception as e:
            logger.warning(f"Delivery via {channel.value} to {destination} failed: {e}")
            return False
