"""Lifecycle hooks around Memory operations.

``pre_*`` handlers run before anything is stored and may reject the call by
raising HookValidationError (any other exception aborts it too).
``post_*`` handlers observe the outcome; their failures are logged and
swallowed so an audit sink going down never fails a write.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field

from .errors import HookValidationError
from .models.validators import Metadata, MemoryId, NonNegativeInt, OwnerId

logger = logging.getLogger(__name__)

HookName = Literal[
    "pre_add",
    "post_add",
    "pre_update",
    "post_update",
    "pre_delete",
    "post_delete",
    "post_search",
]

HOOK_NAMES: frozenset[str] = frozenset(get_args(HookName))

HookHandler = Callable[[Any], Awaitable[None]]

__all__ = [
    "AddEvent",
    "DeleteEvent",
    "HOOK_NAMES",
    "HookName",
    "HookRegistry",
    "HookValidationError",
    "SearchEvent",
    "UpdateEvent",
]


class AddEvent(BaseModel):
    """Payload of ``pre_add`` / ``post_add``; ``item_ids`` is only set after the fact."""

    content: str = Field(min_length=1)
    owner_id: OwnerId
    metadata: Metadata = Field(default_factory=dict)
    infer: bool = True
    item_ids: list[MemoryId] = Field(default_factory=list)


class UpdateEvent(BaseModel):
    memory_id: MemoryId
    content: str = Field(min_length=1)
    # The patch on pre_update, the resulting metadata on post_update
    metadata: dict[str, Any] | None = None
    version: int | None = None


class DeleteEvent(BaseModel):
    memory_id: MemoryId
    deleted: bool = False


class SearchEvent(BaseModel):
    query: str
    owner_id: OwnerId
    result_ids: list[MemoryId] = Field(default_factory=list)
    result_count: NonNegativeInt = 0


class HookRegistry:
    """Ordered async handlers per hook name.

    Usage::

        hooks = HookRegistry()

        async def reject_secrets(event: AddEvent) -> None:
            if "password" in event.content.lower():
                raise HookValidationError("refusing to memorise credentials")

        async def audit(event: AddEvent) -> None:
            await audit_log.write(event.owner_id, event.item_ids)

        hooks.add("pre_add", reject_secrets)
        hooks.add("post_add", audit)

        memory = Memory(config, hooks=hooks)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[HookHandler]] = {name: [] for name in HOOK_NAMES}

    def add(self, name: HookName, fn: HookHandler) -> None:
        """Append *fn* to the handlers of *name*; handlers run in registration order.

        Raises:
            ValueError: *name* is not a known hook.
        """
        if name not in HOOK_NAMES:
            raise ValueError(f"Unknown hook {name!r}; expected one of {sorted(HOOK_NAMES)}")
        self._handlers[name].append(fn)

    def remove(self, name: HookName, fn: HookHandler) -> bool:
        """Unregister *fn*; returns False if it was not registered under *name*."""
        handlers = self._handlers.get(name, [])
        if fn not in handlers:
            return False
        handlers.remove(fn)
        return True

    def __len__(self) -> int:
        return sum(len(handlers) for handlers in self._handlers.values())

    async def fire_pre(self, name: str, event: Any) -> None:
        """Run the ``pre_*`` handlers; the first exception aborts the operation."""
        for handler in self._handlers.get(name, []):
            await handler(event)

    async def fire_post(self, name: str, event: Any) -> None:
        """Run the ``post_*`` handlers, logging (never raising) their failures."""
        for handler in self._handlers.get(name, []):
            try:
                await handler(event)
            except Exception as e:
                logger.warning(f"{name} handler {getattr(handler, '__name__', handler)!r} failed: {e}")
