"""
Outbound backup events and the publishers that deliver them.

The pipeline only emits events; formatting and transport (mail, chat, ...)
belong to the publisher. Publishing never raises into the caller.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupSucceeded:
    filename: str
    size: int
    destinations: List[str]
    name: str = field(default='backup_succeeded', init=False)


@dataclass(frozen=True)
class BackupFailed:
    error: str
    context: Dict[str, Any] = field(default_factory=dict)
    name: str = field(default='backup_failed', init=False)


@dataclass(frozen=True)
class CleanupSucceeded:
    results: Dict[str, Any]
    name: str = field(default='cleanup_succeeded', init=False)


@dataclass(frozen=True)
class HealthUnhealthy:
    message: str
    issues: List[str]
    name: str = field(default='health_unhealthy', init=False)


class EventPublisher:
    """Interface for event delivery."""

    def publish(self, event) -> None:
        raise NotImplementedError


class LoggingPublisher(EventPublisher):
    """Default publisher: writes every event to the log."""

    def publish(self, event) -> None:
        level = logging.ERROR if event.name in ('backup_failed', 'health_unhealthy') else logging.INFO
        logger.log(level, "Backup event %s: %s", event.name, asdict(event))


class CompositePublisher(EventPublisher):
    """Fans one event out to several publishers."""

    def __init__(self, publishers: List[EventPublisher]):
        self.publishers = list(publishers)

    def publish(self, event) -> None:
        for publisher in self.publishers:
            safe_publish(publisher, event)


def safe_publish(publisher: Optional[EventPublisher], event) -> bool:
    """
    Deliver an event, logging instead of raising on failure.

    Args:
        publisher: Publisher to use (None disables delivery)
        event: Event dataclass instance

    Returns:
        True if the publisher accepted the event
    """
    if publisher is None:
        return False

    try:
        publisher.publish(event)
        return True
    except Exception as e:
        logger.error(f"Failed to publish {event.name} event: {e}")
        return False
