"""Business events and accounting emission."""

from motolease.events.accounting import AccountingEventService
from motolease.events.emitter import AsyncEventEmitter, AsyncEventHandler
from motolease.events.types import BusinessEventData, EntityType, Operation

__all__ = [
    "AccountingEventService",
    "AsyncEventEmitter",
    "AsyncEventHandler",
    "BusinessEventData",
    "EntityType",
    "Operation",
]
