"""
Handler registry - maps (event_type, version) to a business mutation.

Each registration carries three things:
- payload_model: the pydantic model the event's inner payload must satisfy
- handle: the critical mutation, returning a HandlerOutcome
- is_applied: the idempotency guard dispatch and safe replay consult before
  running the mutation

Handlers get everything they need through HandlerContext; they never reach
for module-level clients.
"""
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.config import Settings
from gearhook.models.webhook_event import WebhookEventLog
from gearhook.schemas.related_entity import RelatedEntity
from gearhook.services.mailer import Mailer

logger = logging.getLogger(__name__)

FollowUp = Callable[[], Awaitable[Any]]


@dataclass
class HandlerContext:
    db: AsyncSession
    event: WebhookEventLog
    mailer: Mailer
    settings: Settings


@dataclass
class HandlerOutcome:
    """
    related: the business row the mutation created or updated.
    follow_ups: best-effort work (notifications) run only after the event
    status is committed. Their failures are logged, never recorded on the event.
    """
    related: Optional[RelatedEntity] = None
    message: str = ""
    follow_ups: list[FollowUp] = field(default_factory=list)


@dataclass
class AppliedCheck:
    applied: bool
    related: Optional[RelatedEntity] = None


HandleFn = Callable[[HandlerContext, Any], Awaitable[HandlerOutcome]]
IsAppliedFn = Callable[[HandlerContext, Any], Awaitable[AppliedCheck]]


@dataclass(frozen=True)
class HandlerRegistration:
    event_type: str
    version: str
    payload_model: type[BaseModel]
    handle: HandleFn
    is_applied: IsAppliedFn


class HandlerRegistry:
    def __init__(self) -> None:
        self._registrations: dict[tuple[str, str], HandlerRegistration] = {}

    def register(self, registration: HandlerRegistration) -> None:
        key = (registration.event_type, registration.version)
        if key in self._registrations:
            raise ValueError(f"Handler already registered for {key[0]} v{key[1]}")
        self._registrations[key] = registration
        logger.debug("Registered handler for %s v%s", key[0], key[1])

    def get(self, event_type: str, version: str) -> Optional[HandlerRegistration]:
        return self._registrations.get((event_type, version))

    def supported(self) -> list[tuple[str, str]]:
        return sorted(self._registrations)


@lru_cache()
def get_default_registry() -> HandlerRegistry:
    """Registry with every built-in handler."""
    from gearhook.services.quote_accepted import QUOTE_ACCEPTED_V1

    registry = HandlerRegistry()
    registry.register(QUOTE_ACCEPTED_V1)
    return registry
