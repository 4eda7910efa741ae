"""Provide the RPC."""

import asyncio
import inspect
import logging
import os
import sys
import textwrap
import time
import weakref
from collections.abc import Mapping, Sequence

import shortuuid
from pydantic import BaseModel

from .utils import (
    MessageEmitter,
    ObjectProxy,
    callable_name,
    ensure_event_loop,
    format_exception,
    safe_create_future,
)

MARKER = "__rpc__"
EPHEMERAL_PREFIX = "temp_fn_"
COLLECT_GRACE = 30
COLLECT_INTERVAL = 30

LOGLEVEL = os.environ.get("WORKER_RPC_LOGLEVEL", "WARNING").upper()
logging.basicConfig(stream=sys.stdout)
logger = logging.getLogger("worker-rpc")
logger.setLevel(LOGLEVEL)

METHOD_TIMEOUT = float(os.environ.get("WORKER_RPC_METHOD_TIMEOUT", "5"))

background_tasks = set()


class RPCError(Exception):
    """Base class for RPC errors."""


class RemoteError(RPCError):
    """Represent an exception raised by the remote side."""

    def __init__(self, message, remote_type=None, remote_traceback=None):
        """Set up instance."""
        super().__init__(message)
        self.remote_message = message
        self.remote_type = remote_type or type(self).__name__
        self.remote_traceback = remote_traceback


class HandlerNotFoundError(RemoteError):
    """The remote side has no handler under the requested name."""


class RPCTimeoutError(RPCError, TimeoutError):
    """No result arrived within the call timeout."""


class ConnectionFailureError(RPCError, ConnectionError):
    """The connection was lost or could not deliver the message."""


class MalformedMessageError(RPCError):
    """An inbound message could not be classified or decoded."""


_ERROR_TYPES = {
    "HandlerNotFoundError": HandlerNotFoundError,
}


def _encode_error(error):
    """Encode an exception as an error token."""
    if isinstance(error, RemoteError):
        error_type, message = error.remote_type, error.remote_message
    else:
        error_type, message = type(error).__name__, str(error)
    return {
        MARKER: True,
        "kind": "error",
        "type": error_type,
        "message": message,
        "trace": format_exception(error),
    }


def _decode_error(token):
    """Decode an error token into a RemoteError."""
    error_type = token.get("type") or "Exception"
    error_class = _ERROR_TYPES.get(error_type, RemoteError)
    return error_class(
        str(token.get("message", "")),
        remote_type=error_type,
        remote_traceback=token.get("trace"),
    )


def inline_function(func):
    """Create an inline-code token carrying the source of a function.

    Only named functions defined with ``def`` can be inlined. The receiving
    side compiles the source, so both ends must trust each other.
    """
    if not inspect.isfunction(func) or func.__name__ == "<lambda>":
        raise ValueError("Only named functions defined with `def` can be inlined")
    return {
        MARKER: True,
        "kind": "inline",
        "id": shortuuid.uuid(),
        "name": func.__name__,
        "code": textwrap.dedent(inspect.getsource(func)),
    }


class Timer:
    """Represent a timer."""

    def __init__(self, timeout, callback, *args, label="timer", **kwargs):
        """Set up instance."""
        self._timeout = timeout
        self._callback = callback
        self._task = None
        self._args = args
        self._kwargs = kwargs
        self._label = label
        self.started = False

    def start(self):
        """Start the timer."""
        if not self.started:
            self._task = asyncio.ensure_future(self._job())
            self.started = True
        else:
            self.reset()

    async def _job(self):
        """Handle a job."""
        await asyncio.sleep(self._timeout)
        ret = self._callback(*self._args, **self._kwargs)
        if ret is not None and inspect.isawaitable(ret):
            await ret

    def clear(self):
        """Clear the timer."""
        if self._task and self.started:
            self._task.cancel()
            self._task = None
            self.started = False
        else:
            logger.debug("Clearing a timer (%s) which is not started", self._label)

    def reset(self):
        """Reset the timer."""
        if self._task is None:
            self.start()
        else:
            self._task.cancel()
            self._task = asyncio.ensure_future(self._job())


class RemoteFunction:
    """Call stub for a handler exposed by the remote side."""

    def __init__(self, rpc_instance, name, timeout=None):
        self._rpc = rpc_instance
        self.__name__ = name
        self.__doc__ = f"Remote handler: {name}"
        # seconds, None means the RPC default
        self.timeout = timeout
        # resources moved (not copied) on the next invocation
        self.transfer = []

    def __call__(self, *arguments, **kwargs):
        transfer, self.transfer = self.transfer, []
        return self._rpc.call(
            self.__name__,
            arguments,
            kwargs,
            transfer=transfer,
            timeout=self.timeout,
        )

    def __repr__(self):
        return f"<RemoteFunction {self.__name__}>"

    def __str__(self):
        return self.__repr__()


class RemoteService(ObjectProxy):
    """Namespace of call stubs, one per remote handler name."""

    def __init__(self, rpc_instance):
        super().__init__()
        object.__setattr__(self, "_rpc", rpc_instance)

    def __missing__(self, name):
        if not isinstance(name, str) or name.startswith("_"):
            raise KeyError(name)
        stub = RemoteFunction(self._rpc, name)
        self[name] = stub
        return stub


class RemoteRecord(Mapping):
    """Read-through view over a received keyed record."""

    def __init__(self, rpc_instance, raw, cache):
        self._rpc = rpc_instance
        self._raw = raw
        self._cache = cache

    def __getitem__(self, key):
        return self._rpc._decode(self._raw[key], self._cache)

    def __getattr__(self, key):
        if key.startswith("_"):
            raise AttributeError(key)
        try:
            return self[key]
        except KeyError:
            raise AttributeError(key) from None

    def __contains__(self, key):
        return key in self._raw

    def __iter__(self):
        return iter(self._raw)

    def __len__(self):
        return len(self._raw)

    def unwrap(self):
        """Return the underlying transport value."""
        return self._raw

    def __repr__(self):
        return f"RemoteRecord({self._raw!r})"


class RemoteSequence(Sequence):
    """Read-through view over a received sequence."""

    def __init__(self, rpc_instance, raw, cache):
        self._rpc = rpc_instance
        self._raw = raw
        self._cache = cache

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(len(self._raw)))]
        return self._rpc._decode(self._raw[index], self._cache)

    def __len__(self):
        return len(self._raw)

    def __eq__(self, other):
        if not isinstance(other, (list, tuple, RemoteSequence)):
            return NotImplemented
        return len(self) == len(other) and all(a == b for a, b in zip(self, other))

    __hash__ = None

    def unwrap(self):
        """Return the underlying transport value."""
        return self._raw

    def __repr__(self):
        return f"RemoteSequence({self._raw!r})"


class RPC(MessageEmitter):
    """Represent one end of a bidirectional RPC connection."""

    def __init__(
        self,
        connection,
        name=None,
        method_timeout=None,
        collect_grace=None,
        collect_interval=None,
        allow_inline_code=False,
        loop=None,
    ):
        """Set up instance."""
        self._name = name or shortuuid.uuid()
        self._method_timeout = (
            METHOD_TIMEOUT if method_timeout is None else method_timeout
        )
        self._collect_grace = COLLECT_GRACE if collect_grace is None else collect_grace
        self._collect_interval = (
            COLLECT_INTERVAL if collect_interval is None else collect_interval
        )
        self._allow_inline_code = allow_inline_code
        self.loop = loop or ensure_event_loop()
        super().__init__(logger)

        self._handlers = {}
        self._pending = {}
        # Non-owning: the registry is the only strong reference to a handler
        self._liveness = weakref.WeakKeyDictionary()
        self._unweakable_liveness = {}
        self._closed = False
        self._collector = Timer(
            self._collect_interval,
            self.collect_handlers,
            label=f"{self._name}:collector",
        )
        self.remote = RemoteService(self)

        self.on("request", self._handle_request)
        self.on("result", self._handle_result)

        assert hasattr(connection, "emit_message") and hasattr(
            connection, "on_message"
        ), "Connection must provide emit_message and on_message"
        self._connection = connection
        connection.on_message(self._on_message)
        if hasattr(connection, "on_disconnected"):
            connection.on_disconnected(self._on_disconnected)

    @property
    def closed(self):
        """Whether the connection was lost or closed."""
        return self._closed

    def expose(self, handlers):
        """Register named handlers that the remote side may call."""
        handlers = dict(handlers)
        for name, handler in handlers.items():
            if not isinstance(name, str) or not name:
                raise ValueError(f"Invalid handler name: {name!r}")
            if name.startswith(EPHEMERAL_PREFIX):
                raise ValueError(
                    f"Handler name must not start with {EPHEMERAL_PREFIX!r}: {name}"
                )
            if not callable(handler):
                raise TypeError(f"Handler {name} is not callable")
        for name, handler in handlers.items():
            if name in self._handlers:
                logger.debug("Replacing handler: %s (%s)", name, self._name)
            self._handlers[name] = handler
        logger.debug("Exposed handlers (%s): %s", self._name, list(handlers))

    def pin(self, handler, name=None):
        """Register a callable and return its reference token."""
        if not callable(handler):
            raise TypeError(f"Cannot pin a non-callable object: {handler!r}")
        if name is not None:
            self.expose({name: handler})
        else:
            name = self._register_callable(handler)
        return {MARKER: True, "kind": "ref", "id": name}

    def _register_callable(self, handler):
        for name, registered in self._handlers.items():
            if name.startswith(EPHEMERAL_PREFIX):
                continue
            if registered is handler or (
                inspect.ismethod(handler) and registered == handler
            ):
                return name
        name = EPHEMERAL_PREFIX + shortuuid.uuid()
        while name in self._handlers:
            name = EPHEMERAL_PREFIX + shortuuid.uuid()
        self._handlers[name] = handler
        logger.debug(
            "Registered ephemeral handler %s for %s",
            name,
            callable_name(handler),
        )
        return name

    def call(self, name, args=None, kwargs=None, transfer=None, timeout=None):
        """Call a handler exposed by the remote side.

        Returns a future that resolves with the (lazily decoded) result.
        ``timeout`` is in seconds; ``0`` disables the timeout. Items in
        ``transfer`` are moved to the connection instead of being copied.
        """
        fut = safe_create_future(self.loop)
        if self._closed:
            fut.set_exception(
                ConnectionFailureError(f"Connection closed, cannot call {name}")
            )
            return fut

        transfer = list(transfer or [])
        timeout = self._method_timeout if timeout is None else timeout

        reqid = shortuuid.uuid()
        while reqid in self._pending:
            reqid = shortuuid.uuid()

        def settle():
            entry = self._pending.pop(reqid, None)
            if entry and entry["timer"] and entry["timer"].started:
                entry["timer"].clear()

        def resolve(result):
            settle()
            if not fut.done():
                fut.set_result(result)

        def reject(error):
            settle()
            if not fut.done():
                fut.set_exception(error)

        timer = None
        if timeout:
            timer = Timer(
                timeout,
                reject,
                RPCTimeoutError(f"Method call timed out: {name} (timeout={timeout}s)"),
                label=name,
            )
        # Registered before sending, a fast reply must find its entry
        self._pending[reqid] = {
            "name": name,
            "resolve": resolve,
            "reject": reject,
            "timer": timer,
            "created_at": time.monotonic(),
        }
        fut.add_done_callback(lambda _: settle())

        try:
            encoded = self.encode(
                {"args": list(args or ()), "kwargs": dict(kwargs or {})},
                transfer=transfer,
            )
        except Exception as err:
            reject(err)
            return fut

        message = {
            MARKER: True,
            "is_request": True,
            "reqid": reqid,
            "name": name,
            "args": encoded["args"],
        }
        if encoded["kwargs"]:
            message["kwargs"] = encoded["kwargs"]

        if timer:
            timer.start()
        self._send(message, transfer=transfer, reject=reject)
        return fut

    async def _emit(self, message, transfer):
        ret = self._connection.emit_message(message, transfer=transfer)
        if inspect.isawaitable(ret):
            await ret

    def _send(self, message, transfer=None, reject=None):
        emit_task = self.loop.create_task(self._emit(message, transfer or []))
        background_tasks.add(emit_task)

        def handle_result(task):
            background_tasks.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is None:
                return
            if isinstance(error, (ConnectionError, OSError)):
                error = ConnectionFailureError(
                    f"Failed to send message ({message.get('name', 'result')}): {error}"
                )
            if reject is not None:
                reject(error)
            else:
                logger.warning(
                    "Failed to send result for %s: %s", message.get("reqid"), error
                )

        emit_task.add_done_callback(handle_result)

    def _on_message(self, message):
        """Handle an inbound message."""
        if not isinstance(message, dict) or message.get(MARKER) is not True:
            return
        if self._closed:
            logger.debug("Ignoring message on a closed connection (%s)", self._name)
            return
        envelope = ObjectProxy(message)
        self._fire("request" if envelope.get("is_request") else "result", envelope)
        self._collector.reset()

    def _handle_request(self, data):
        """Handle a call from the remote side."""
        reqid = data.get("reqid")
        name = data.get("name")
        if not isinstance(reqid, str):
            logger.error(
                "Malformed request without correlation id (%s): %s", self._name, name
            )
            return
        handler = self._handlers.get(name) if isinstance(name, str) else None
        if handler is None:
            logger.debug("Handler not found: %s (%s)", name, self._name)
            self._reply(
                reqid,
                HandlerNotFoundError(f"Handler not found: {name}"),
                is_reject=True,
            )
            return
        if name.startswith(EPHEMERAL_PREFIX) and (
            self._get_liveness(name, handler) is not None
        ):
            self._touch(name, handler)

        try:
            cache = {}
            args = self._decode(data.get("args") or [], cache)
            kwargs = self._decode(data["kwargs"], cache) if data.get("kwargs") else {}
            logger.debug("Executing handler: %s (%s)", name, self._name)
            result = handler(*args, **kwargs)
        except (Exception, asyncio.CancelledError) as err:
            logger.debug("Error in handler (%s): %s", name, err)
            self._reply(reqid, err, is_reject=True)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._wait_result(reqid, name, result))
            background_tasks.add(task)
            task.add_done_callback(background_tasks.discard)
        else:
            self._reply(reqid, result)

    async def _wait_result(self, reqid, name, awaitable):
        try:
            result = await awaitable
        except (Exception, asyncio.CancelledError) as err:
            logger.debug("Error in handler (%s): %s", name, err)
            self._reply(reqid, err, is_reject=True)
        else:
            self._reply(reqid, result)

    def _reply(self, reqid, data, is_reject=False):
        if self._closed:
            logger.debug("Dropping result for %s, connection closed", reqid)
            return
        try:
            encoded = self.encode(data)
        except Exception as err:
            encoded, is_reject = self.encode(err), True
        message = {
            MARKER: True,
            "is_request": False,
            "reqid": reqid,
            "data": encoded,
        }
        if is_reject:
            message["is_reject"] = True
        self._send(message)

    def _handle_result(self, data):
        """Handle the result of one of our calls."""
        reqid = data.get("reqid")
        entry = self._pending.get(reqid) if isinstance(reqid, str) else None
        if entry is None:
            logger.debug("Dropping result of unknown or expired call: %s", reqid)
            return
        try:
            result = self._decode(data.get("data"), {})
        except Exception as err:
            entry["reject"](
                MalformedMessageError(
                    f"Failed to decode the result of {entry['name']}: {err}"
                )
            )
            return
        if data.get("is_reject"):
            if not isinstance(result, BaseException):
                result = RemoteError(str(result))
            entry["reject"](result)
        else:
            entry["resolve"](result)

    def encode(self, a_object, transfer=None):
        """Encode an object into a transport value."""
        cache = {id(item): (item, item) for item in transfer or ()}
        return self._encode(a_object, cache)

    def _encode(self, a_object, cache):
        """Encode object."""
        if isinstance(a_object, (int, float, bool, str, bytes)) or a_object is None:
            return a_object

        visited = cache.get(id(a_object))
        if visited is not None:
            return visited[1]

        # skip if already encoded
        if isinstance(a_object, dict) and a_object.get(MARKER) is True:
            return a_object

        if isinstance(a_object, BaseModel):
            b_object = self._encode(a_object.model_dump(), cache)
        elif isinstance(a_object, Mapping):
            b_object = {}
            # cached before walking the children so that cycles terminate
            cache[id(a_object)] = (a_object, b_object)
            for key in list(a_object):
                b_object[key] = self._encode(a_object[key], cache)
        elif isinstance(a_object, (list, tuple, RemoteSequence)):
            b_object = []
            cache[id(a_object)] = (a_object, b_object)
            for item in a_object:
                b_object.append(self._encode(item, cache))
        elif isinstance(a_object, BaseException):
            b_object = _encode_error(a_object)
        elif isinstance(a_object, RemoteFunction) and a_object._rpc is self:
            # a stub sent back to its origin names the peer's own handler
            b_object = {MARKER: True, "kind": "local", "id": a_object.__name__}
        elif callable(a_object):
            b_object = {
                MARKER: True,
                "kind": "ref",
                "id": self._register_callable(a_object),
            }
        else:
            return a_object
        cache[id(a_object)] = (a_object, b_object)
        return b_object

    def decode(self, a_object):
        """Decode a transport value into a read-through view."""
        return self._decode(a_object, {})

    def _decode(self, a_object, cache):
        """Decode object."""
        if isinstance(a_object, dict):
            if a_object.get(MARKER) is True:
                return self._decode_token(a_object, cache)
            key = ("obj", id(a_object))
            if key not in cache:
                cache[key] = RemoteRecord(self, a_object, cache)
            return cache[key]
        if isinstance(a_object, (list, tuple)):
            key = ("obj", id(a_object))
            if key not in cache:
                cache[key] = RemoteSequence(self, a_object, cache)
            return cache[key]
        return a_object

    def _decode_token(self, token, cache):
        kind = token.get("kind")
        if kind == "error":
            key = ("error", id(token))
        else:
            key = (kind, token.get("id"))
        if key in cache:
            return cache[key]
        if kind == "ref":
            b_object = RemoteFunction(self, token["id"])
        elif kind == "local":
            b_object = self._handlers.get(token.get("id"))
            if b_object is None:
                raise HandlerNotFoundError(f"Handler not found: {token.get('id')}")
        elif kind == "inline":
            b_object = self._compile_inline(token)
        elif kind == "error":
            b_object = _decode_error(token)
        else:
            raise MalformedMessageError(f"Unknown token kind: {kind!r}")
        cache[key] = b_object
        return b_object

    def _compile_inline(self, token):
        if not self._allow_inline_code:
            raise PermissionError(
                f"Inline code is not allowed, refusing to compile {token.get('name')!r}"
            )
        namespace = {}
        exec(compile(token["code"], "<string>", "exec"), namespace)
        return namespace[token["name"]]

    def _get_liveness(self, name, handler):
        try:
            return self._liveness.get(handler)
        except TypeError:
            return self._unweakable_liveness.get(name)

    def _touch(self, name, handler, now=None):
        now = time.monotonic() if now is None else now
        try:
            self._liveness[handler] = now
        except TypeError:
            self._unweakable_liveness[name] = now

    def _forget(self, name, handler):
        try:
            self._liveness.pop(handler, None)
        except TypeError:
            self._unweakable_liveness.pop(name, None)

    def collect_handlers(self, now=None):
        """Remove ephemeral handlers idle for longer than the grace period.

        The grace period of a handler starts at the first sweep that sees it.
        Named handlers are never collected. Returns the collected names.
        """
        now = time.monotonic() if now is None else now
        collected = []
        for name, handler in list(self._handlers.items()):
            if not name.startswith(EPHEMERAL_PREFIX):
                continue
            stamp = self._get_liveness(name, handler)
            if stamp is None:
                self._touch(name, handler, now)
            elif now - stamp > self._collect_grace:
                del self._handlers[name]
                self._forget(name, handler)
                collected.append(name)
        if collected:
            logger.debug(
                "Collected %d ephemeral handlers (%s)", len(collected), self._name
            )
        return collected

    def get_stats(self):
        """Return handler and call counters."""
        ephemeral = sum(1 for name in self._handlers if name.startswith(EPHEMERAL_PREFIX))
        return {
            "name": self._name,
            "handlers": len(self._handlers) - ephemeral,
            "ephemeral_handlers": ephemeral,
            "pending_calls": len(self._pending),
            "closed": self._closed,
        }

    def _on_disconnected(self, reason=None):
        """Fail every pending call and stop serving."""
        if self._closed:
            return
        self._closed = True
        logger.info("Connection lost (%s): %s", self._name, reason)
        for entry in list(self._pending.values()):
            entry["reject"](
                ConnectionFailureError(
                    f"Connection lost while calling {entry['name']}: {reason}"
                )
            )
        self._pending.clear()
        self._handlers.clear()
        self._liveness.clear()
        self._unweakable_liveness.clear()
        if self._collector.started:
            self._collector.clear()
        self._fire("disconnected", reason)

    def close(self, reason=None):
        """Close the RPC, failing pending calls."""
        self._on_disconnected(reason or "closed")

    async def disconnect(self, reason=None):
        """Close the RPC and the underlying connection."""
        connection = self._connection
        self.close(reason)
        if connection is not None and hasattr(connection, "disconnect"):
            try:
                await connection.disconnect(reason)
            except Exception as e:
                logger.debug("Error disconnecting underlying connection: %s", e)
