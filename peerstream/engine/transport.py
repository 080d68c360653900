"""
WebSocket peer transport - carries engine payloads over one aiohttp WebSocket.

Provides:
1. Client connection to an already reachable peer (or relay) URL
2. Synchronous send() backed by a bounded outbound queue and writer task
3. Read loop feeding TEXT and BINARY frames to the engine
4. Optional periodic LinkEngine.expire() sweep

Peer discovery and signaling are not handled here; the URL must already
point at something that speaks the protocol.

Usage:
    transport = WebSocketPeerTransport("ws://host:9001/ws", config.transport)
    engine = LinkEngine(transport, config, hooks)
    transport.attach(engine)
    if await transport.connect():
        await transport.run_until_closed()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

import aiohttp
from aiohttp import WSMsgType

from .config import TransportConfig

if TYPE_CHECKING:
    from .dispatcher import LinkEngine

logger = logging.getLogger(__name__)


class WebSocketPeerTransport:
    """
    One WebSocket connection presented to the engine as a single peer.

    The peer id defaults to the URL. Engine callbacks run on the event loop
    thread, one frame at a time.
    """

    def __init__(
        self,
        url: str,
        config: Optional[TransportConfig] = None,
        *,
        peer_id: Optional[str] = None,
    ):
        self._url = url
        self._config = config or TransportConfig()
        self.peer_id = peer_id or self._config.peer_id or url

        self._engine: Optional[LinkEngine] = None

        # Connection
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connected = False
        self._disconnect_reported = True

        # Outbound
        self._outbound: Optional[asyncio.Queue[str]] = None

        # Background tasks
        self._read_task: Optional[asyncio.Task] = None
        self._write_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._closed: Optional[asyncio.Event] = None

        # Statistics
        self.frames_sent = 0
        self.frames_received = 0

    def attach(self, engine: LinkEngine) -> None:
        self._engine = engine

    @property
    def is_connected(self) -> bool:
        return self._connected

    def get_stats(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "connected": self._connected,
            "frames_sent": self.frames_sent,
            "frames_received": self.frames_received,
            "queued": self._outbound.qsize() if self._outbound is not None else 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the WebSocket and report the peer to the engine."""
        if self._engine is None:
            raise RuntimeError("attach() an engine before connecting")
        if self._connected:
            return True

        self._closed = asyncio.Event()
        try:
            self._session = aiohttp.ClientSession()
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(
                    self._url,
                    heartbeat=self._config.heartbeat_interval,
                    max_msg_size=self._config.max_message_size,
                ),
                timeout=self._config.connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"WebSocket connection to {self._url} failed: {e or type(e).__name__}")
            await self._cleanup()
            self._closed.set()
            return False

        self._connected = True
        self._disconnect_reported = False
        self._outbound = asyncio.Queue(maxsize=self._config.send_queue_size)
        self._write_task = asyncio.create_task(self._write_loop())
        self._read_task = asyncio.create_task(self._read_loop())

        timeouts = self._engine.config.timeouts
        if timeouts.enabled:
            self._sweep_task = asyncio.create_task(self._sweep_loop(timeouts.sweep_interval_s))

        logger.info(f"WebSocket connected to {self._url}")
        self._engine.on_peer_connected(self.peer_id)
        return True

    async def run_until_closed(self) -> None:
        """Wait until the connection has closed for any reason."""
        if self._closed is None:
            return
        await self._closed.wait()

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

        if self._read_task is not None:
            try:
                await asyncio.wait_for(self._read_task, timeout=self._config.connect_timeout)
            except asyncio.TimeoutError:
                self._read_task.cancel()
            except asyncio.CancelledError:
                pass

        await self._stop_background()
        self._report_disconnect()
        await self._cleanup()
        if self._closed is not None:
            self._closed.set()

    async def _stop_background(self) -> None:
        for task in (self._write_task, self._sweep_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._write_task = None
        self._sweep_task = None

    async def _cleanup(self) -> None:
        """Release connection resources."""
        self._connected = False
        self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _report_disconnect(self) -> None:
        self._connected = False
        if self._disconnect_reported:
            return
        self._disconnect_reported = True
        logger.info(f"WebSocket to {self._url} closed")
        if self._engine is not None:
            self._engine.on_peer_disconnected(self.peer_id)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def send(self, peer_id: str, payload: str) -> None:
        """
        Queue a payload for the writer task.

        Raises:
            ConnectionError: unknown peer, not connected, or queue full
        """
        if peer_id != self.peer_id:
            raise ConnectionError(f"no connection to peer {peer_id}")
        if not self._connected or self._outbound is None:
            raise ConnectionError("not connected")
        try:
            self._outbound.put_nowait(payload)
        except asyncio.QueueFull:
            raise ConnectionError("send queue full") from None

    async def _write_loop(self) -> None:
        assert self._outbound is not None
        while True:
            payload = await self._outbound.get()
            ws = self._ws
            if ws is None or ws.closed:
                logger.warning("Dropping outbound payload: WebSocket closed")
                continue
            try:
                await ws.send_str(payload)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.error(f"WebSocket send failed: {e}")
                await ws.close()
                return
            self.frames_sent += 1

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._ws is not None and self._engine is not None
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self.frames_received += 1
                    self._engine.on_message_received(self.peer_id, msg.data)

                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
                    break

                elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Read loop error: {e}")
        finally:
            self._report_disconnect()
            if self._closed is not None:
                self._closed.set()

    async def _sweep_loop(self, interval: float) -> None:
        assert self._engine is not None
        while True:
            await asyncio.sleep(interval)
            self._engine.expire()
