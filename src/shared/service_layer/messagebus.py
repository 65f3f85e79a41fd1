"""Simple message bus for command and event handling."""

import logging
from typing import Dict, Type, Callable, Union, List

from shared.domain.commands import Command, Event

logger = logging.getLogger(__name__)


class MessageBus:
    """Simple message bus for routing commands and events to handlers.

    Handlers are plain callables taking the message only; dependencies are
    bound when the bus is assembled (see ``blob_ingestion.bootstrap``).
    """

    def __init__(self):
        self.command_handlers: Dict[Type[Command], Callable] = {}
        self.event_handlers: Dict[Type[Event], List[Callable]] = {}

    def register_handler(self, message_type: Type[Command], handler: Callable):
        """Register a command handler."""
        self.command_handlers[message_type] = handler

    def register_event_handler(self, event_type: Type[Event], handler: Callable):
        """Register an event handler."""
        if event_type not in self.event_handlers:
            self.event_handlers[event_type] = []
        self.event_handlers[event_type].append(handler)

    def handle(self, message: Union[Command, Event]):
        """Handle a command or an event.

        Commands have exactly one handler and its errors propagate to the
        caller. Events may have many handlers; a failing handler is logged and
        the remaining ones still run.
        """
        message_type = type(message)

        if isinstance(message, Command):
            if message_type not in self.command_handlers:
                raise ValueError(f"No handler registered for command {message_type.__name__}")

            handler = self.command_handlers[message_type]
            logger.debug(f"Handling command {message_type.__name__}")
            return handler(message)

        if isinstance(message, Event):
            if message_type not in self.event_handlers:
                logger.warning(f"No handlers registered for event {message_type.__name__}")
                return []

            results = []
            for handler in self.event_handlers[message_type]:
                try:
                    logger.debug(f"Handling event {message_type.__name__} with {_handler_name(handler)}")
                    results.append(handler(message))
                except Exception:
                    logger.exception("Exception handling event %s with %s", message, _handler_name(handler))
                    continue

            return results

        raise TypeError(f"{message} was not an Event or Command")


def _handler_name(handler: Callable) -> str:
    # functools.partial has no __name__
    func = getattr(handler, "func", handler)
    return getattr(func, "__name__", repr(func))
