"""
Lightweight Event System for Plan Sync Lifecycle Hooks

Provides a simple event emitter so the UI bridge, audit trail or metrics can
observe saves, conflicts and terminal failures without the engine knowing
about them. Not a message bus: handlers run inline and their errors are
logged, never propagated into the engine.
"""
import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

# Event registry: event_name -> list of handlers
_event_handlers: Dict[str, List[Callable]] = {}


def subscribe(event_name: str, handler: Callable):
    """
    Subscribe a handler function to an event.

    Example:
        subscribe(EVENT_OPERATION_FAILED, lambda operation, error: notify_user(error))
    """
    _event_handlers.setdefault(event_name, []).append(handler)
    logger.debug(f"Subscribed handler to event: {event_name}")


def unsubscribe(event_name: str, handler: Callable):
    """Remove a handler; unknown handlers are ignored."""
    handlers = _event_handlers.get(event_name, [])
    if handler in handlers:
        handlers.remove(handler)


def clear_handlers():
    """Drop every subscription (used by tests and process shutdown)."""
    _event_handlers.clear()


def emit(event_name: str, **kwargs):
    """
    Emit an event, calling all subscribed handlers.

    Example:
        emit(EVENT_PLAN_CHANGES_APPLIED, plan_id=str(plan_id), updated_at=new_updated_at)
    """
    for handler in list(_event_handlers.get(event_name, [])):
        try:
            handler(**kwargs)
        except Exception as e:
            logger.error(f"Error in event handler for {event_name}: {e}", exc_info=True)


# Plan sync event names
EVENT_PLAN_CHANGES_APPLIED = 'plan_sync.changes_applied'
EVENT_PLAN_CONFLICT = 'plan_sync.conflict'
EVENT_OPERATION_SAVED = 'plan_sync.operation_saved'
EVENT_OPERATION_FAILED = 'plan_sync.operation_failed'
EVENT_QUEUE_STATUS_CHANGED = 'plan_sync.queue_status_changed'
EVENT_JOB_COMPLETED = 'plan_sync.job_completed'
EVENT_JOB_FAILED = 'plan_sync.job_failed'
