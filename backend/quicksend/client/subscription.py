"""Current subscription tier as seen by the client, with change notifications."""
import logging
from typing import Optional

from quicksend.events import EventBus, TierChanged, optional_bus
from quicksend.services.tier_policy import Tier, TierLimits, limits_for

logger = logging.getLogger(__name__)


class SubscriptionState:
    """Holds the tier fed in by purchase verification.

    Screens that render limits subscribe to ``TierChanged`` on ``events``.
    """

    def __init__(self, tier=Tier.FREE, events: Optional[EventBus] = None):
        self._tier = Tier.parse(tier)
        self.events = optional_bus(events)

    @property
    def tier(self) -> Tier:
        return self._tier

    @property
    def limits(self) -> TierLimits:
        return limits_for(self._tier)

    async def set_tier(self, tier) -> bool:
        """Switch tiers. Returns True (and publishes TierChanged) only on an actual change."""
        new_tier = Tier.parse(tier)
        if new_tier is self._tier:
            return False
        previous, self._tier = self._tier, new_tier
        logger.info(f"Subscription tier changed: {previous.value} -> {new_tier.value}")
        await self.events.publish(TierChanged(previous=previous, current=new_tier))
        return True
