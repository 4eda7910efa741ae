"""Provide bidirectional RPC between two isolated execution contexts."""

from .rpc import (
    EPHEMERAL_PREFIX,
    MARKER,
    RPC,
    ConnectionFailureError,
    HandlerNotFoundError,
    MalformedMessageError,
    RemoteError,
    RemoteFunction,
    RemoteRecord,
    RemoteSequence,
    RemoteService,
    RPCError,
    RPCTimeoutError,
    inline_function,
)
from .connection import (
    QueueConnection,
    StreamConnection,
    connect,
    create_connection_pair,
    open_connection,
    serve,
)
from .utils import ObjectProxy

__all__ = [
    "RPC",
    "MARKER",
    "EPHEMERAL_PREFIX",
    "RPCError",
    "RemoteError",
    "HandlerNotFoundError",
    "RPCTimeoutError",
    "ConnectionFailureError",
    "MalformedMessageError",
    "RemoteFunction",
    "RemoteRecord",
    "RemoteSequence",
    "RemoteService",
    "inline_function",
    "QueueConnection",
    "StreamConnection",
    "connect",
    "create_connection_pair",
    "open_connection",
    "serve",
    "ObjectProxy",
]
