"""Request dependencies: clock, notifier, count cache and the visit workflow."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header

from vms.core.cache import VisitCountCache
from vms.core.clock import Clock, SystemClock
from vms.core.config import settings
from vms.db.session import DbSession, SessionLocal
from vms.services.notification_service import GatewayDispatcher, NotificationDispatcher, Notifier
from vms.services.visit_workflow import VisitWorkflow


@lru_cache
def get_clock() -> Clock:
    return SystemClock(settings.timezone)


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    return GatewayDispatcher.from_settings(settings)


@lru_cache
def get_count_cache() -> VisitCountCache:
    return VisitCountCache(settings.count_cache_ttl_seconds)


def get_notifier(
    dispatcher: Annotated[NotificationDispatcher, Depends(get_dispatcher)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> Notifier:
    """One outbox per request, flushed after the response is sent."""
    return Notifier(dispatcher, session_factory=SessionLocal, clock=clock, config=settings)


def get_workflow(
    db: DbSession,
    clock: Annotated[Clock, Depends(get_clock)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
    cache: Annotated[VisitCountCache, Depends(get_count_cache)],
) -> VisitWorkflow:
    return VisitWorkflow(db, clock, notifier, cache)


def get_actor_role(x_actor_role: Annotated[str, Header()]) -> str:
    return x_actor_role.strip().lower()


ClockDep = Annotated[Clock, Depends(get_clock)]
WorkflowDep = Annotated[VisitWorkflow, Depends(get_workflow)]
ActorRole = Annotated[str, Depends(get_actor_role)]
