"""
Domain events emitted by the resolution workflow.

Events are published after the owning transaction commits. Delivery is
best-effort: a failing handler is logged and never affects the caller.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Type

from resolution.models import utc_now

logger = logging.getLogger(__name__)


@dataclass
class BetEvent:
    bet_id: str
    occurred_at: datetime = field(default_factory=utc_now, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict:
        data = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in asdict(self).items()
        }
        data["event"] = self.name
        return data


@dataclass
class BetClosedEvent(BetEvent):
    resolver_ids: List[str] = field(default_factory=list)


@dataclass
class BetVoteSubmittedEvent(BetEvent):
    resolver_id: str = ""
    votes_submitted: int = 0
    total_resolvers: int = 0


@dataclass
class BetResolvedEvent(BetEvent):
    outcome: Optional[str] = None
    winner_ids: List[str] = field(default_factory=list)
    loser_ids: List[str] = field(default_factory=list)
    settlement_id: Optional[str] = None
    forced: bool = False


@dataclass
class BetCancelledEvent(BetEvent):
    reason: Optional[str] = None
    refunded_user_ids: List[str] = field(default_factory=list)


@dataclass
class BetFulfillmentSubmittedEvent(BetEvent):
    winner_id: str = ""
    fulfillment_status: str = ""


@dataclass
class LoserFulfillmentClaimedEvent(BetEvent):
    loser_id: str = ""
    proof_url: Optional[str] = None


@dataclass
class BetResolutionDeadlineApproachingEvent(BetEvent):
    pending_resolver_ids: List[str] = field(default_factory=list)
    resolution_deadline: Optional[datetime] = None


Handler = Callable[[BetEvent], None]


class EventDispatcher:
    """
    Synchronous fan-out to subscribed handlers.
    Subscribing to ``BetEvent`` receives every event.
    """

    def __init__(self):
        self._handlers: Dict[Type[BetEvent], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[BetEvent], handler: Handler):
        self._handlers[event_type].append(handler)

    def publish(self, event: BetEvent):
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in handlers:
                try:
                    handler(event)
                except Exception as e:
                    logger.error(f"Handler {getattr(handler, '__name__', handler)} failed for {event.name}: {e}")


def log_event(event: BetEvent):
    """Default handler: record the event in the application log."""
    logger.info(f"{event.name} for bet {event.bet_id}")
