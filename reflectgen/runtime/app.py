"""
Application object shared by user code and the reflection child.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..log import trace
from .schema import Schema

logger = logging.getLogger(__name__)


class RuntimeMode(str, Enum):
    """How the application behaves when start() is called."""

    RUNTIME = "runtime"  # Run registered listeners (serve traffic)
    REFLECTION = "reflection"  # Assemble the API surface only, no side effects


Listener = Callable[["App"], Any]


class App:
    """The application: a schema, plugins and start listeners."""

    def __init__(self):
        self.schema = Schema()
        self.mode = RuntimeMode.RUNTIME
        self._plugins: list[str] = []
        self._listeners: list[Listener] = []
        self.started = False

    def set_mode(self, mode: RuntimeMode) -> None:
        self.mode = RuntimeMode(mode)

    def use(self, plugin: Any) -> None:
        """Register a plugin, given by name or by an object with a name attribute."""
        name = plugin if isinstance(plugin, str) else getattr(plugin, "name", None)
        if not name:
            raise TypeError("plugins must be a name or have a 'name' attribute")
        if name not in self._plugins:
            self._plugins.append(name)

    @property
    def plugins(self) -> list[str]:
        return list(self._plugins)

    def on_start(self, listener: Listener) -> Listener:
        """Register a callable run by start(), e.g. one that binds a server socket."""
        self._listeners.append(listener)
        return listener

    def start(self) -> None:
        if self.mode is RuntimeMode.REFLECTION:
            trace(logger, "reflection mode, not starting %d listener(s)", len(self._listeners))
            return
        if not self._listeners:
            logger.warning("app.start() called but no listener is registered")
        self.started = True
        for listener in self._listeners:
            listener(self)

    async def create_context(self, request: Any) -> dict[str, Any]:
        return await self.schema.create_context(request)

    def reflect(self, include_plugins: bool = False) -> dict:
        payload = self.schema.reflect()
        payload["plugins"] = self.plugins if include_plugins else []
        return payload


app = App()
schema = app.schema
