"""
Flowgate Capability Registry

Lookup from (agent, service, action) to an invocable handler.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

import structlog

from flowgate.errors import CapabilityNotFound

logger = structlog.get_logger(__name__)


CapabilityKey = Tuple[str, str, str]


@dataclass
class CapabilityRequest:
    """Everything a handler receives for one step attempt."""
    agent: str
    service: str
    action: str
    run_id: str
    step_id: str
    attempt: int = 1
    parameters: Dict[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)  # Read-only
    inputs: Mapping[str, Any] = field(default_factory=dict)  # Read-only
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        """True once the run has been cancelled."""
        return self.cancel_event.is_set()


class Capability:
    """
    Base class for capability handlers.

    ``invoke`` returns the step's output map. Raise ``RetryableError`` for
    transient failures and ``ConfigurationError`` for failures that must not
    be retried; any other exception is treated as retryable.
    """

    async def invoke(self, request: CapabilityRequest) -> Dict[str, Any]:
        raise NotImplementedError


HandlerFunc = Callable[[CapabilityRequest], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class FunctionCapability(Capability):
    """Adapts a plain or async function to the Capability contract."""

    def __init__(self, func: HandlerFunc):
        self.func = func
        self._is_async = inspect.iscoroutinefunction(func)

    async def invoke(self, request: CapabilityRequest) -> Dict[str, Any]:
        if self._is_async:
            return await self.func(request)

        # Blocking handlers run off the event loop
        result = await asyncio.to_thread(self.func, request)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionCapability({getattr(self.func, '__name__', self.func)!r})"


@dataclass
class CapabilityInfo:
    """Catalogue entry for a declared capability."""
    agent: str
    service: str
    action: str
    description: str = ""
    bound: bool = False

    @property
    def key(self) -> CapabilityKey:
        return (self.agent, self.service, self.action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "service": self.service,
            "action": self.action,
            "description": self.description,
            "bound": self.bound,
        }


class CapabilityRegistry:
    """
    Registry of capability handlers.

    Features:
    - Declared catalogue used for definition validation
    - Handler binding and fail-closed resolution
    - Decorator registration for plain and async functions

    Constructed explicitly and injected into the engine; lookups are safe
    from any number of concurrent runs.
    """

    def __init__(self):
        self._catalogue: Dict[CapabilityKey, CapabilityInfo] = {}
        self._handlers: Dict[CapabilityKey, Capability] = {}

    # === Registration ===

    def declare(
        self,
        agent: str,
        service: str,
        action: str,
        description: str = "",
    ) -> CapabilityInfo:
        """Declare a capability in the catalogue without binding a handler."""
        key = (agent, service, action)
        info = self._catalogue.get(key)
        if info is None:
            info = CapabilityInfo(agent, service, action, description)
            self._catalogue[key] = info
        elif description:
            info.description = description
        return info

    def register(
        self,
        agent: str,
        service: str,
        action: str,
        handler: Union[Capability, HandlerFunc],
        description: str = "",
    ) -> None:
        """Declare a capability and bind its handler."""
        if not isinstance(handler, Capability):
            if not callable(handler):
                raise TypeError(f"Handler for {agent}/{service}/{action} is not callable")
            handler = FunctionCapability(handler)

        info = self.declare(agent, service, action, description)
        info.bound = True
        self._handlers[info.key] = handler

        logger.debug("capability_registered", agent=agent, service=service, action=action)

    def capability(
        self,
        agent: str,
        service: str,
        action: str,
        description: str = "",
    ) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator form of ``register``."""
        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.register(agent, service, action, func, description or (func.__doc__ or "").strip())
            return func
        return decorator

    def unregister(self, agent: str, service: str, action: str) -> bool:
        """Unbind a handler; the catalogue entry stays declared."""
        key = (agent, service, action)
        if self._handlers.pop(key, None) is None:
            return False
        self._catalogue[key].bound = False
        return True

    # === Lookup ===

    def is_declared(self, agent: str, service: str, action: str) -> bool:
        return (agent, service, action) in self._catalogue

    def resolve(self, agent: str, service: str, action: str) -> Capability:
        """Get the bound handler or raise CapabilityNotFound."""
        handler = self._handlers.get((agent, service, action))
        if handler is None:
            raise CapabilityNotFound(agent, service, action)
        return handler

    def get(self, agent: str, service: str, action: str) -> Optional[Capability]:
        return self._handlers.get((agent, service, action))

    def catalogue(self) -> Set[CapabilityKey]:
        """All declared triples."""
        return set(self._catalogue)

    def list_capabilities(self) -> List[CapabilityInfo]:
        return sorted(self._catalogue.values(), key=lambda i: i.key)

    def __len__(self) -> int:
        return len(self._catalogue)

    def __contains__(self, key: object) -> bool:
        return key in self._catalogue
