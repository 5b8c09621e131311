"""Run a unit of work and reliably report how it ended."""

import inspect
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from outpost.core.service import ReliableMessageService


class NotifyingTaskRunner:
    """Wraps task execution with completion and failure notifications.

    On success a task-completion message (with the duration in milliseconds)
    is sent and the task's result returned. On failure an error message is
    sent and the original exception re-raised. Notifications go through the
    reliable service, so they survive delivery outages.
    """

    def __init__(self, service: "ReliableMessageService") -> None:
        self.service = service

    async def run(
        self,
        task_name: str,
        message_type: str,
        destination: str,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Run func(*args, **kwargs), which may be sync or async."""
        started = time.monotonic()
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            await self.service.send_error(message_type, destination, task_name, str(e))
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        await self.service.send_task_completion(message_type, destination, task_name, duration_ms)
        return result
