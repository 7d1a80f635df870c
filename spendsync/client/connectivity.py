from __future__ import annotations

import inspect
from typing import Awaitable, Callable, List, Union

import structlog

logger = structlog.get_logger(__name__)

Listener = Callable[[bool], Union[None, Awaitable[None]]]


class ConnectivityMonitor:
    """Tracks whether the client believes it is online.

    Listeners run, in registration order, only when the state actually flips.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: List[Listener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def on_change(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online)
        for listener in list(self._listeners):
            outcome = listener(online)
            if inspect.isawaitable(outcome):
                await outcome
