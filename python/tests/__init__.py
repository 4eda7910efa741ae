"""Test the worker RPC module."""

from worker_rpc import RPC, create_connection_pair


class DummyConnection:
    """Minimal connection stub recording what is sent."""

    def __init__(self):
        self.sent = []
        self._on_message_handler = None
        self._on_disconnected_handler = None

    def on_message(self, handler):
        self._on_message_handler = handler

    def on_disconnected(self, handler):
        self._on_disconnected_handler = handler

    async def emit_message(self, message, transfer=None):
        self.sent.append((message, transfer))

    async def disconnect(self, reason=None):
        if self._on_disconnected_handler:
            self._on_disconnected_handler(reason)

    def receive(self, message):
        """Deliver a message as if it came from the peer."""
        self._on_message_handler(message)

    def requests(self):
        return [message for message, _ in self.sent if message.get("is_request")]

    def results(self):
        return [message for message, _ in self.sent if not message.get("is_request")]


def create_rpc(**kwargs):
    """Create an RPC over a dummy connection."""
    conn = DummyConnection()
    return RPC(conn, name="test", **kwargs), conn


def create_pair(coordinator_config=None, worker_config=None):
    """Create a coordinator/worker pair over an in-process connection."""
    left, right = create_connection_pair()
    coordinator = RPC(left, name="coordinator", **(coordinator_config or {}))
    worker = RPC(right, name="worker", **(worker_config or {}))
    return coordinator, worker
