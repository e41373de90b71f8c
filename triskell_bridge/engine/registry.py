"""
Triskell Bridge Handler Registry — exact (object, name) lookup, frozen after startup.

Webhook handlers are keyed by (object, event), page actions by
(object, action) and report builders by (object, "report"). Registration is
only possible while the service initializes; Orchestrator.initialize() calls
freeze() before the HTTP listener starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type

from pydantic import BaseModel

from triskell_bridge.engine.errors import DuplicateJobError

logger = logging.getLogger("triskell_bridge.engine.registry")


@dataclass(frozen=True)
class RegisteredHandler:
    """A handler bound to one (object, name) pair."""

    object: str
    name: str
    handler: Callable[..., Any]
    payload_model: Optional[Type[BaseModel]] = None
    validate: Optional[Callable[..., Any]] = None
    timeout_seconds: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.object, self.name)


class HandlerRegistry:
    """
    In-memory registry keyed by the exact (object, name) pair.

    Usage:
        registry = HandlerRegistry("webhook")
        registry.register("project", "created", on_project_created)
        registry.freeze()
        entry = registry.resolve("project", "created")
    """

    def __init__(self, kind: str = "handler"):
        self.kind = kind
        self._entries: Dict[Tuple[str, str], RegisteredHandler] = {}
        self._frozen = False

    def register(
        self,
        object: str,
        name: str,
        handler: Callable[..., Any],
        *,
        payload_model: Optional[Type[BaseModel]] = None,
        validate: Optional[Callable[..., Any]] = None,
        timeout_seconds: Optional[float] = None,
        **metadata: Any,
    ) -> RegisteredHandler:
        """Register a handler. A taken (object, name) pair keeps its original handler."""
        if self._frozen:
            raise RuntimeError(f"{self.kind} registry is frozen, cannot register {object}/{name}")

        key = (object, name)
        if key in self._entries:
            raise DuplicateJobError(
                f"{self.kind} already registered for {object}/{name}",
                name=f"{object}/{name}",
                kind=self.kind,
            )

        entry = RegisteredHandler(
            object=object,
            name=name,
            handler=handler,
            payload_model=payload_model,
            validate=validate,
            timeout_seconds=timeout_seconds,
            metadata=metadata,
        )
        self._entries[key] = entry
        logger.debug(f"Registered {self.kind}: {object}/{name}")
        return entry

    def resolve(self, object: str, name: str) -> Optional[RegisteredHandler]:
        """Exact lookup. No wildcard or fallback."""
        return self._entries.get((object, name))

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def keys(self) -> List[Tuple[str, str]]:
        return sorted(self._entries)

    def objects(self) -> List[str]:
        return sorted({obj for obj, _ in self._entries})

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[RegisteredHandler]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
