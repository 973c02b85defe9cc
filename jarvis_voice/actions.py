"""
Action dispatch for assistant replies

Replies may carry side effects (create a reminder, a calendar entry or a note,
control music, navigate to a place). The controller hands them to the
ActionDispatcher, which schedules each registered handler as a background task
and never waits for it.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from .conversation_types import ActionKind

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str], Union[None, Awaitable[None]]]


def parse_actions(raw: Any) -> Dict[ActionKind, str]:
    """Convert a backend `actions` mapping into typed actions, dropping unknown kinds"""
    actions: Dict[ActionKind, str] = {}
    if not isinstance(raw, Mapping):
        return actions

    for key, payload in raw.items():
        try:
            kind = ActionKind(str(key).lower())
        except ValueError:
            logger.debug(f"Ignoring unknown action kind: {key}")
            continue
        if payload is None:
            continue
        actions[kind] = str(payload)

    return actions


class ActionDispatcher:
    """Routes reply actions to external collaborators, fire-and-forget"""

    def __init__(self, handlers: Optional[Dict[ActionKind, ActionHandler]] = None):
        self._handlers: Dict[ActionKind, ActionHandler] = dict(handlers or {})
        self._tasks: Set[asyncio.Task] = set()

    def register(self, kind: ActionKind, handler: ActionHandler) -> None:
        self._handlers[kind] = handler

    def unregister(self, kind: ActionKind) -> None:
        self._handlers.pop(kind, None)

    def dispatch(self, actions: Mapping[ActionKind, str]) -> int:
        """Schedule handlers for every action with a registered handler; returns the count"""
        scheduled = 0
        for kind, payload in actions.items():
            handler = self._handlers.get(kind)
            if handler is None:
                logger.warning(f"No handler registered for {kind.value} action")
                continue

            task = asyncio.get_running_loop().create_task(self._run(kind, handler, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            scheduled += 1

        return scheduled

    async def _run(self, kind: ActionKind, handler: ActionHandler, payload: str) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
            logger.info(f"Action {kind.value} completed")
        except Exception as e:
            logger.error(f"Action {kind.value} failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight actions; used on shutdown and in tests"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


class LoggingActionHandler:
    """Default collaborator that records the requested side effect"""

    def __init__(self, kind: ActionKind):
        self.kind = kind

    def __call__(self, payload: str) -> None:
        logger.info(f"📌 {self.kind.value} requested: {payload}")


def create_default_dispatcher() -> ActionDispatcher:
    """Dispatcher with logging handlers for every action kind"""
    return ActionDispatcher({kind: LoggingActionHandler(kind) for kind in ActionKind})


__all__ = [
    'ActionHandler',
    'ActionDispatcher',
    'LoggingActionHandler',
    'parse_actions',
    'create_default_dispatcher',
]
