"""
transport.py — topic-based publish/subscribe for the challenge exchange.

The exchange code only calls three things:
    await transport.subscribe(topic, handler)     handler: async (data: bytes) -> None
    await transport.unsubscribe(topic, handler)   handler=None drops every handler
    await transport.publish(topic, data)

Implementations:
- MemoryPubsub: everything in one process; each delivery runs as its own task
  so a handler that publishes never re-enters the publisher.
- PubsubRelay + RelayPubsubClient: a tiny TCP hub. Peers send framed
  {"op": "subscribe" | "unsubscribe" | "publish", "topic", "data"} requests;
  the relay fans each publish out to every connection subscribed to the topic
  (the sender included, like a real pubsub mesh).
"""

import asyncio
import base64
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .framing import read_frame, write_frame

logger = logging.getLogger(__name__)

Handler = Callable[[bytes], Awaitable[None]]


class PubsubTransport:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def subscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(topic, [])
        if handler not in handlers:
            handlers.append(handler)

    async def unsubscribe(self, topic: str, handler: Optional[Handler] = None) -> None:
        handlers = self._handlers.get(topic, [])
        if handler is None:
            handlers.clear()
        elif handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(topic, None)

    async def publish(self, topic: str, data: bytes) -> None:
        raise NotImplementedError

    def subscriptions(self) -> Dict[str, int]:
        """topic -> number of local handlers (handy for leak checks)."""
        return {topic: len(handlers) for topic, handlers in self._handlers.items()}

    def _dispatch(self, topic: str, data: bytes) -> None:
        for handler in list(self._handlers.get(topic, [])):
            task = asyncio.create_task(self._run_handler(topic, handler, data))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_handler(self, topic: str, handler: Handler, data: bytes) -> None:
        try:
            await handler(data)
        except Exception:
            logger.exception(f"pubsub handler for {topic} failed")

    async def drain(self) -> None:
        """Wait until every delivery (and whatever it published in turn) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class MemoryPubsub(PubsubTransport):
    """In-process pubsub. Share one instance between nodes to connect them."""

    def __init__(self) -> None:
        super().__init__()
        self.published: List[Dict[str, Any]] = []

    async def publish(self, topic: str, data: bytes) -> None:
        self.published.append({"topic": topic, "data": data})
        self._dispatch(topic, data)


class ConnectionContext:
    """Reader/writer plus the topics this connection asked for."""
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.topics: Set[str] = set()


class PubsubRelay:
    """TCP hub: topic -> subscribed connections; publishes fan out verbatim."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self.port = port
        self.conns: Dict[asyncio.StreamWriter, ConnectionContext] = {}
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        # port 0 means "pick one"; remember what we got
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"pubsub relay listening on {self.host}:{self.port}")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        # wait_closed() also waits for open connections, so drop them first
        for writer in list(self.conns):
            writer.close()
        await self._server.wait_closed()
        self._server = None

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: read frames and pass them to process_frame()."""
        ctx = ConnectionContext(reader, writer)
        self.conns[writer] = ctx
        try:
            while True:
                frame = await read_frame(reader)
                if frame is None:
                    break
                await self.process_frame(ctx, frame)
        except asyncio.IncompleteReadError:
            # Peer went away mid-frame; nothing to do.
            pass
        except (ConnectionError, ValueError) as exc:
            logger.warning(f"relay connection error: {exc}")
        finally:
            self.conns.pop(writer, None)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def process_frame(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> None:
        op = frame.get("op")
        topic = frame.get("topic")
        if not isinstance(topic, str):
            return

        if op == "subscribe":
            ctx.topics.add(topic)
        elif op == "unsubscribe":
            ctx.topics.discard(topic)
        elif op == "publish" and isinstance(frame.get("data"), str):
            await self.broadcast(topic, {"op": "message", "topic": topic, "data": frame["data"]})
            return
        else:
            logger.debug(f"relay ignoring frame op={op!r}")
            return

        if "id" in frame:
            await write_frame(ctx.writer, {"op": "ack", "id": frame["id"]})

    async def broadcast(self, topic: str, frame: Dict[str, Any]) -> None:
        """Best-effort write to every connection subscribed to `topic`."""
        for writer, ctx in list(self.conns.items()):
            if topic not in ctx.topics:
                continue
            try:
                await write_frame(writer, frame)
            except ConnectionError as exc:
                logger.debug(f"dropping relay subscriber: {exc}")
                self.conns.pop(writer, None)


class RelayPubsubClient(PubsubTransport):
    """One TCP connection to a PubsubRelay, shared by every local handler."""

    def __init__(self, host: str, port: int) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._acks: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        self._reader_task = asyncio.create_task(self.reader_loop())

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError:
                pass
        self._writer = None

    async def _request(self, frame: Dict[str, Any]) -> None:
        """Send a control frame and wait for the relay to acknowledge it."""
        if self._writer is None:
            raise ConnectionError("relay client is not connected")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._acks[request_id] = future
        frame["id"] = request_id
        try:
            await write_frame(self._writer, frame)
            await future
        finally:
            self._acks.pop(request_id, None)

    async def subscribe(self, topic: str, handler: Handler) -> None:
        first = topic not in self._handlers
        await super().subscribe(topic, handler)
        if first:
            await self._request({"op": "subscribe", "topic": topic})

    async def unsubscribe(self, topic: str, handler: Optional[Handler] = None) -> None:
        had = topic in self._handlers
        await super().unsubscribe(topic, handler)
        if had and topic not in self._handlers and self._writer is not None:
            await self._request({"op": "unsubscribe", "topic": topic})

    async def publish(self, topic: str, data: bytes) -> None:
        if self._writer is None:
            raise ConnectionError("relay client is not connected")
        await write_frame(self._writer, {
            "op": "publish",
            "topic": topic,
            "data": base64.b64encode(data).decode("ascii"),
        })

    async def reader_loop(self) -> None:
        """Background task: route relay frames to acks or local handlers."""
        try:
            while True:
                frame = await read_frame(self._reader)
                if frame is None:
                    break
                op = frame.get("op")
                if op == "ack":
                    future = self._acks.get(frame.get("id"))
                    if future is not None and not future.done():
                        future.set_result(None)
                elif op == "message":
                    try:
                        data = base64.b64decode(frame.get("data", ""), validate=True)
                    except ValueError:
                        logger.warning("relay sent undecodable message data")
                        continue
                    self._dispatch(frame.get("topic"), data)
        except (asyncio.IncompleteReadError, ConnectionError, ValueError) as exc:
            logger.warning(f"relay connection lost: {exc}")
        finally:
            for future in self._acks.values():
                if not future.done():
                    future.set_exception(ConnectionError("relay connection closed"))
