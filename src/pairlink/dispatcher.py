"""Route mobile messages to handlers by message type."""

import asyncio
import inspect
import logging
from typing import Any, Callable, Coroutine, Optional, Union

from pairlink.errors import BrokerError

logger = logging.getLogger(__name__)

Reply = Optional[dict[str, Any]]

# Handler type: async or sync function taking (mobile_id, payload), returning a reply message
Handler = Union[
    Callable[[str, dict[str, Any]], Coroutine[Any, Any, Reply]],
    Callable[[str, dict[str, Any]], Reply],
]


def error_message(code: str, message: str) -> dict[str, Any]:
    """Build an ``error`` wire message."""
    return {"type": "error", "payload": {"code": code, "message": message}}


class MessageDispatcher:
    """Route messages to registered handlers by type."""

    def __init__(self, handler_timeout: float = 10.0):
        """Initialize dispatcher.

        Args:
            handler_timeout: Maximum time for handler to complete (seconds).
        """
        self._handlers: dict[str, Handler] = {}
        self._handler_timeout = handler_timeout

    def register(self, message_type: str, handler: Handler) -> None:
        """Register a handler for a message type.

        Args:
            message_type: Type identifier (e.g., "ping", "session_create").
            handler: Async or sync function(mobile_id, payload).
        """
        self._handlers[message_type] = handler
        logger.debug(f"Registered handler for: {message_type}")

    async def dispatch(
        self,
        mobile_id: str,
        message_type: str,
        payload: dict[str, Any],
    ) -> Reply:
        """Dispatch a message and return the reply to send back, if any.

        Broker errors become ``error`` replies carrying the error code so the
        mobile learns why its request was rejected.
        """
        handler = self._handlers.get(message_type)

        if handler is None:
            logger.warning(f"No handler for message type: {message_type}")
            return error_message("unknown_message", f"Unknown message type: {message_type}")

        try:
            if inspect.iscoroutinefunction(handler):
                return await asyncio.wait_for(
                    handler(mobile_id, payload), timeout=self._handler_timeout
                )
            return handler(mobile_id, payload)

        except BrokerError as e:
            return error_message(e.code, str(e))
        except asyncio.TimeoutError:
            logger.error(
                f"Handler timeout for {message_type} "
                f"(mobile={mobile_id}, timeout={self._handler_timeout}s)"
            )
            return error_message("timeout", f"{message_type} timed out")
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed {message_type} from {mobile_id}: {e}")
            return error_message("bad_request", f"Malformed {message_type}")
