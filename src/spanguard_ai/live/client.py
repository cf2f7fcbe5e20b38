"""
Live Channel Client

Reconnecting subscriber for the /ws/monitor live channel.

After a dropped connection the client waits a fixed delay and reconnects.
Analyses interrupted by the drop are not resumed; their partial text is
discarded.
"""

import asyncio
import json
import logging
import os
from typing import AsyncIterator, Awaitable, Callable, Optional

import websockets

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 3.0


class LiveChannelClient:
    """
    Subscriber for live analysis events.

    Usage:
        client = LiveChannelClient("ws://localhost:8081/ws/monitor")
        async for event in client.events():
            print(event["type"])
    """

    def __init__(
        self,
        url: Optional[str] = None,
        reconnect_delay: float = RECONNECT_DELAY,
    ):
        self.url = url or os.getenv("SPANGUARD_WS_URL", "ws://localhost:8081/ws/monitor")
        self.reconnect_delay = reconnect_delay
        self.partial_analysis: list[str] = []
        self.connected = False
        self._stopped = False

    def stop(self) -> None:
        """Stop after the current event."""
        self._stopped = True

    def _track(self, event: dict) -> None:
        event_type = event.get("type")
        if event_type == "analysis-start":
            self.partial_analysis = []
        elif event_type == "analysis-chunk":
            self.partial_analysis.append(event.get("data") or "")
        elif event_type == "analysis-complete":
            self.partial_analysis = []

    async def events(self) -> AsyncIterator[dict]:
        """Yield events across reconnects until `stop()` is called."""
        while not self._stopped:
            try:
                async with websockets.connect(self.url) as ws:
                    self.connected = True
                    logger.info(f"Connected to live channel at {self.url}")

                    async for raw in ws:
                        try:
                            event = json.loads(raw)
                        except json.JSONDecodeError:
                            logger.warning(f"Ignoring malformed live event: {raw!r}")
                            continue

                        self._track(event)
                        yield event
                        if self._stopped:
                            return

            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                # Closed sockets and rejected handshakes alike
                logger.warning(f"Live channel connection lost: {e}")

            finally:
                self.connected = False

            if self.partial_analysis:
                logger.info("Discarding analysis interrupted by disconnect")
                self.partial_analysis = []

            if self._stopped:
                return

            logger.info(f"Reconnecting to live channel in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def run(self, handler: Callable[[dict], Awaitable[None]]) -> None:
        """Deliver every event to `handler` until stopped."""
        async for event in self.events():
            await handler(event)
