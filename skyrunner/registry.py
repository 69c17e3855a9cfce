"""Registry of shared functions keyed by a stable logical name.

Collectors are shared by every builder in a stack. The stack owns one
registry and hands it to whichever component needs a collector, so a second
builder reuses the first builder's cleaner instead of creating another.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

from loguru import logger

type Function = Callable[[dict[str, Any], Any], Any]


class FunctionRegistry:
    def __init__(self) -> None:
        self._functions: dict[str, Function] = {}

    def get_or_register[F: Function](self, name: str, factory: Callable[[], F]) -> F:
        """Return the function registered under ``name``, creating it on first use."""
        existing = self._functions.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        function = factory()
        self._functions[name] = function
        logger.debug(f"Registered shared function '{name}'")
        return function

    def get(self, name: str) -> Function:
        try:
            return self._functions[name]
        except KeyError:
            raise KeyError(
                f"Function '{name}' not registered. Available: {', '.join(self._functions) or 'none'}"
            ) from None

    def invoke(self, name: str, event: dict[str, Any], context: Any = None) -> Any:
        return self.get(name)(event, context)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(self._functions)

    def __len__(self) -> int:
        return len(self._functions)
