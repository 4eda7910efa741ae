"""Provide connections carrying RPC messages between two execution contexts."""

import asyncio
import copy
import logging
import os
import sys

import msgpack
import shortuuid

from .rpc import RPC

CHUNK_SIZE = 1024 * 256

LOGLEVEL = os.environ.get("WORKER_RPC_LOGLEVEL", "WARNING").upper()
logging.basicConfig(stream=sys.stdout)
logger = logging.getLogger("worker-rpc.connection")
logger.setLevel(LOGLEVEL)


class QueueConnection:
    """One end of an in-process connection pair.

    Messages are deep-copied on the way through, so the two ends never share
    mutable state; items listed in ``transfer`` are handed over as they are.
    """

    def __init__(self, name=None):
        """Set up instance."""
        self._name = name or shortuuid.uuid()
        self._peer = None
        self._queue = asyncio.Queue()
        self._handle_message = None
        self._handle_disconnected = None
        self._pump_task = None
        self._closed = False

    def on_message(self, handler):
        """Handle message."""
        self._handle_message = handler
        if self._pump_task is None and not self._closed:
            self._pump_task = asyncio.ensure_future(self._pump())

    def on_disconnected(self, handler):
        """Register a disconnection event handler."""
        self._handle_disconnected = handler

    async def emit_message(self, message, transfer=None):
        """Send a message to the peer."""
        if self._closed or self._peer is None or self._peer._closed:
            raise ConnectionError(f"Connection {self._name} is closed")
        memo = {id(item): item for item in transfer or ()}
        self._peer._queue.put_nowait(copy.deepcopy(message, memo))

    async def _pump(self):
        while not self._closed:
            message = await self._queue.get()
            try:
                self._handle_message(message)
            except (Exception, asyncio.CancelledError) as exp:
                logger.exception("Error handling message on %s: %s", self._name, exp)

    def _shutdown(self, reason):
        if self._closed:
            return
        self._closed = True
        if self._pump_task and self._pump_task is not asyncio.current_task():
            self._pump_task.cancel()
        logger.info("Connection %s closed: %s", self._name, reason)
        if self._handle_disconnected:
            self._handle_disconnected(reason)

    async def disconnect(self, reason=None):
        """Close both ends of the pair."""
        self._shutdown(reason)
        if self._peer is not None:
            self._peer._shutdown(reason)


def create_connection_pair():
    """Create two linked in-process connections."""
    left = QueueConnection(f"left-{shortuuid.uuid()}")
    right = QueueConnection(f"right-{shortuuid.uuid()}")
    left._peer, right._peer = right, left
    return left, right


class StreamConnection:
    """Connection over an asyncio stream pair, framed with msgpack."""

    def __init__(self, reader, writer, max_buffer_size=0):
        """Set up instance."""
        self._reader = reader
        self._writer = writer
        self._unpacker = msgpack.Unpacker(
            raw=False,
            strict_map_key=False,
            max_buffer_size=max_buffer_size,
        )
        self._handle_message = None
        self._handle_disconnected = None
        self._listen_task = None
        self._closed = False

    def on_message(self, handler):
        """Handle message."""
        self._handle_message = handler
        if self._listen_task is None and not self._closed:
            self._listen_task = asyncio.ensure_future(self._listen())

    def on_disconnected(self, handler):
        """Register a disconnection event handler."""
        self._handle_disconnected = handler

    async def emit_message(self, message, transfer=None):
        """Send a message; ``transfer`` is accepted but the bytes are copied."""
        if self._closed:
            raise ConnectionError("Connection is closed")
        self._writer.write(msgpack.packb(message, use_bin_type=True))
        await self._writer.drain()

    async def _listen(self):
        reason = "connection closed by peer"
        try:
            while not self._closed:
                chunk = await self._reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                self._unpacker.feed(chunk)
                for message in self._unpacker:
                    try:
                        self._handle_message(message)
                    except (Exception, asyncio.CancelledError) as exp:
                        logger.exception("Error handling message: %s", exp)
        except (ConnectionError, OSError, msgpack.UnpackException, ValueError) as exp:
            reason = f"read error: {exp}"
            logger.warning("Connection read failed: %s", exp)
        self._shutdown(reason)

    def _shutdown(self, reason):
        if self._closed:
            return
        self._closed = True
        if self._listen_task and self._listen_task is not asyncio.current_task():
            self._listen_task.cancel()
        self._writer.close()
        logger.info("Stream connection closed: %s", reason)
        if self._handle_disconnected:
            self._handle_disconnected(reason)

    async def disconnect(self, reason=None):
        """Close the stream."""
        self._shutdown(reason or "closed")
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error waiting for the stream to close: %s", e)


async def open_connection(host, port, **kwargs):
    """Open a TCP stream connection."""
    reader, writer = await asyncio.open_connection(host, port)
    return StreamConnection(reader, writer, **kwargs)


def connect(connection, handlers=None, **kwargs):
    """Create an RPC over ``connection`` and expose ``handlers``."""
    rpc = RPC(connection, **kwargs)
    if handlers:
        rpc.expose(handlers)
    return rpc


async def serve(connection, handlers, **kwargs):
    """Serve ``handlers`` until the connection is lost.

    Returns the final stats of the RPC.
    """
    rpc = connect(connection, handlers, **kwargs)
    if not rpc.closed:
        await rpc.wait_for("disconnected", None)
    return rpc.get_stats()
