"""Provide utility functions for RPC."""

import asyncio
import inspect
import traceback
from munch import Munch


class ObjectProxy(Munch):
    """Object proxy with dot attribute access.

    Keys win over dict methods, so a key such as ``pop`` or ``update`` is
    reachable as an attribute.
    """

    def __getattribute__(self, k):
        # Check if the attribute is in the dictionary
        if not k.startswith("_") and k in self:
            return self[k]
        # If not, proceed with the usual attribute access
        return super().__getattribute__(k)


def ensure_event_loop():
    """Return the running event loop, or install a new one."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        pass
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    return loop


def safe_create_future(loop=None):
    """Create a future bound to the given (or current) loop."""
    loop = loop or ensure_event_loop()
    return loop.create_future()


def format_traceback(traceback_string):
    """Format traceback, dropping the dispatcher frame."""
    formatted_lines = traceback_string.splitlines()
    # remove the second and third line
    if len(formatted_lines) > 3:
        formatted_lines.pop(1)
        formatted_lines.pop(1)
    formatted_error_string = "\n".join(formatted_lines)
    formatted_error_string = formatted_error_string.replace(
        'File "<string>"', "Inline code"
    )
    return formatted_error_string


def format_exception(error):
    """Return the formatted traceback of an exception instance."""
    return format_traceback(
        "".join(
            traceback.format_exception(type(error), value=error, tb=error.__traceback__)
        )
    )


def callable_name(any_callable):
    """Return a readable name for a callable."""
    name = getattr(any_callable, "__name__", None)
    if name is None and hasattr(any_callable, "func"):
        # functools.partial
        name = getattr(any_callable.func, "__name__", None)
    return name or type(any_callable).__name__


class MessageEmitter:
    """Represent a message emitter."""

    def __init__(self, logger=None):
        """Set up instance."""
        self._event_handlers = {}
        self._logger = logger

    def on(self, event, handler):
        """Register an event handler."""
        if event not in self._event_handlers:
            self._event_handlers[event] = []
        self._event_handlers[event].append(handler)

    def once(self, event, handler):
        """Register an event handler that should only run once."""

        # wrap the handler function,
        # this is needed because setting property
        # won't work for member function of a class instance
        def wrap_func(*args, **kwargs):
            return handler(*args, **kwargs)

        setattr(wrap_func, "_event_run_once", True)
        self.on(event, wrap_func)
        return wrap_func

    def off(self, event=None, handler=None):
        """Reset one or all event handlers."""
        if event is None and handler is None:
            self._event_handlers = {}
        elif event is not None and handler is None:
            if event in self._event_handlers:
                self._event_handlers[event] = []
        else:
            if event in self._event_handlers and handler in self._event_handlers[event]:
                self._event_handlers[event].remove(handler)

    def _fire(self, event, data=None):
        """Fire an event handler."""
        if event in self._event_handlers:
            for handler in list(self._event_handlers[event]):
                try:
                    ret = handler(data)
                    if inspect.isawaitable(ret):
                        asyncio.ensure_future(ret)
                except (Exception, asyncio.CancelledError) as err:
                    if self._logger:
                        self._logger.exception(
                            "Error in %s event handler: %s", event, err
                        )
                finally:
                    handlers = self._event_handlers.get(event, [])
                    if getattr(handler, "_event_run_once", False) and (
                        handler in handlers
                    ):
                        handlers.remove(handler)
        else:
            if self._logger:
                self._logger.debug("Unhandled event: %s, data: %s", event, data)

    async def wait_for(self, event, timeout):
        """Wait for an event to be emitted, or timeout."""
        future = asyncio.get_running_loop().create_future()

        def handler(data):
            if not future.done():
                future.set_result(data)

        wrapped = self.once(event, handler)

        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as err:
            self.off(event, wrapped)
            raise err
