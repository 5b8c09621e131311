"""Delivery handlers and the registry that maps message types to them.

A handler is anything that can attempt to deliver opaque content to a
destination: either a plain callable ``(destination, content)`` or an object
with an ``attempt_delivery(destination, content)`` method. Both may be sync or
async. Handlers report success by returning True (or None) and failure by
returning False or raising.
"""

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

HandlerResult = bool | None | Awaitable[bool | None]
HandlerFunc = Callable[[str, str], HandlerResult]


@runtime_checkable
class DeliveryHandler(Protocol):
    """Protocol for object-style delivery handlers."""

    def attempt_delivery(self, destination: str, content: str) -> HandlerResult:
        """Attempt to deliver content to destination.

        Args:
            destination: Opaque delivery target, e.g. a webhook URL.
            content: Opaque payload to transmit verbatim.

        Returns:
            True or None on success, False on failure, or an awaitable
            resolving to the same. Raising is also treated as failure.
        """
        ...


class HandlerNotFoundError(LookupError):
    """Raised when no handler is registered for a message type."""

    def __init__(self, message_type: str):
        self.message_type = message_type
        super().__init__(f"no handler for type {message_type}")


@dataclass(frozen=True)
class DeliveryResult:
    """Normalized outcome of one delivery attempt."""

    success: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(success=True)

    @classmethod
    def failed(cls, reason: str) -> "DeliveryResult":
        return cls(success=False, reason=reason)


def _normalize(message_type: object) -> object:
    # Registered keys are stripped; lookups must match them
    return message_type.strip() if isinstance(message_type, str) else message_type


def _as_callable(handler: DeliveryHandler | HandlerFunc) -> HandlerFunc:
    if isinstance(handler, DeliveryHandler):
        return handler.attempt_delivery
    if callable(handler):
        return handler
    raise TypeError(
        "handler must be callable or expose attempt_delivery(destination, content), "
        f"got {type(handler).__name__}"
    )


class HandlerRegistry:
    """Maps message types to delivery handlers.

    Writes replace the whole mapping under a lock (copy-on-write), so readers
    never lock and always see a consistent snapshot. Registering a type twice
    replaces the earlier handler.
    """

    def __init__(self, handlers: dict[str, DeliveryHandler | HandlerFunc] | None = None) -> None:
        self._handlers: dict[str, HandlerFunc] = {}
        self._write_lock = threading.Lock()
        for message_type, handler in (handlers or {}).items():
            self.register(message_type, handler)

    def register(self, message_type: str, handler: DeliveryHandler | HandlerFunc) -> None:
        """Register handler for message_type (last registration wins).

        Raises:
            ValueError: If message_type is empty.
            TypeError: If handler is neither callable nor a DeliveryHandler.
        """
        if not isinstance(message_type, str) or not message_type.strip():
            raise ValueError("message_type must be a non-empty string")
        func = _as_callable(handler)
        with self._write_lock:
            updated = dict(self._handlers)
            updated[_normalize(message_type)] = func
            self._handlers = updated

    def unregister(self, message_type: str) -> bool:
        """Remove the handler for message_type. Returns True if one was removed."""
        key = _normalize(message_type)
        with self._write_lock:
            if key not in self._handlers:
                return False
            updated = dict(self._handlers)
            del updated[key]
            self._handlers = updated
            return True

    def get(self, message_type: str) -> HandlerFunc | None:
        return self._handlers.get(_normalize(message_type))

    def resolve(self, message_type: str) -> HandlerFunc:
        """Return the handler for message_type.

        Raises:
            HandlerNotFoundError: If nothing is registered for message_type.
        """
        handler = self.get(message_type)
        if handler is None:
            raise HandlerNotFoundError(message_type)
        return handler

    @property
    def registered_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, message_type: object) -> bool:
        return _normalize(message_type) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


async def _call(handler: HandlerFunc, destination: str, content: str) -> object:
    """Await async handlers on the loop and run sync ones in a worker thread."""
    if inspect.iscoroutinefunction(handler):
        return await handler(destination, content)
    result = await asyncio.to_thread(handler, destination, content)
    if inspect.isawaitable(result):
        result = await result
    return result


async def invoke_handler(
    handler: HandlerFunc,
    destination: str,
    content: str,
    timeout: float | None = None,
) -> DeliveryResult:
    """Invoke a handler and fold every outcome into a DeliveryResult.

    Returned False and raised exceptions both become failures, so callers
    never need to tell them apart. Synchronous handlers run in a worker thread
    so a blocking webhook call never stalls the event loop; the timeout covers
    both kinds. A timed-out thread is abandoned, not interrupted.
    Cancellation is propagated.
    """
    deadline = asyncio.timeout(timeout)
    try:
        async with deadline:
            result = await _call(handler, destination, content)
    except TimeoutError as e:
        if deadline.expired():
            return DeliveryResult.failed(f"handler timed out after {timeout}s")
        return DeliveryResult.failed(f"{type(e).__name__}: {e}")
    except Exception as e:
        return DeliveryResult.failed(f"{type(e).__name__}: {e}")

    if result is None or result is True:
        return DeliveryResult.ok()
    if result is False:
        return DeliveryResult.failed("handler reported failure")
    return DeliveryResult.failed(
        f"handler must return bool or None, got {type(result).__name__}"
    )
