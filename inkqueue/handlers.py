"""Registry mapping job kinds to the coroutines that do the provider work.

A handler is ``async def handler(secret, payload) -> result``: it receives the
API key chosen for the attempt and the job payload, and either returns a
JSON-serializable result or raises. Prompt building and response parsing live
in the handler, outside the queue.
"""

import importlib
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from .exceptions import UnknownJobKindError
from .models import JobKind

logger = logging.getLogger(__name__)

JobHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class HandlerRegistry:
    """Dispatch table from ``JobKind`` to handler."""

    def __init__(self, handlers: Optional[Dict[JobKind, JobHandler]] = None):
        self._handlers: Dict[JobKind, JobHandler] = {}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)

    def register(self, kind: Union[JobKind, str], handler: Optional[JobHandler] = None):
        """Register a handler. Without ``handler``, returns a decorator."""
        kind = JobKind(kind)

        def decorator(func: JobHandler) -> JobHandler:
            self._handlers[kind] = func
            return func

        if handler is None:
            return decorator
        return decorator(handler)

    def get(self, kind: Union[JobKind, str]) -> JobHandler:
        try:
            return self._handlers[JobKind(kind)]
        except (KeyError, ValueError):
            raise UnknownJobKindError(str(getattr(kind, "value", kind))) from None

    def kinds(self) -> List[JobKind]:
        return list(self._handlers)

    def __contains__(self, kind: object) -> bool:
        try:
            return JobKind(kind) in self._handlers
        except ValueError:
            return False


async def not_implemented(secret: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Stand-in result for kinds the generation layer doesn't support yet."""
    return {"message": "not implemented yet", "payload": payload}


def default_registry() -> HandlerRegistry:
    """Registry used when no handler module is configured."""
    return HandlerRegistry(
        {
            JobKind.MAP_REGENERATION: not_implemented,
            JobKind.NODE_EXPANSION: not_implemented,
        }
    )


def load_registry(path: Optional[str]) -> HandlerRegistry:
    """Load a registry from ``"package.module:attribute"``.

    The attribute may be a ``HandlerRegistry`` or a zero-argument callable
    returning one. Without a path the default registry is returned.
    """
    if not path:
        return default_registry()
    module_name, sep, attr = path.partition(":")
    if not sep or not attr:
        raise ValueError(f"Handler path must look like 'module:attribute', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    registry = target if isinstance(target, HandlerRegistry) else target()
    if not isinstance(registry, HandlerRegistry):
        raise TypeError(f"{path} did not produce a HandlerRegistry")
    logger.info("Loaded handlers for %s from %s", ", ".join(k.value for k in registry.kinds()), path)
    return registry
