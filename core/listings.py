"""
P2P Desk Core: Listing teardown

Takes marketplace listings offline once they have served their purpose:
after a refusal, after a confirmed receipt, or when reconciliation finds a
listing that is still active although its trade already holds an order.
"""

import logging
from typing import Optional

from core.clients import MarketplaceClient
from core.exceptions import is_already_done
from core.models import Advertisement, Trade
from core.store import DeskStore

logger = logging.getLogger(__name__)


class ListingManager:
    def __init__(self, store: DeskStore, marketplace: MarketplaceClient):
        self.store = store
        self.marketplace = marketplace

    def retire(self, ad: Advertisement) -> bool:
        """
        Cancel the listing on the marketplace and mark it inactive locally.

        "Not found"/"already" answers count as done. Placeholder listings are
        only deactivated locally.

        Returns:
            True if the listing is inactive afterwards
        """
        if not ad.is_active:
            return True

        if not ad.is_placeholder():
            try:
                self.marketplace.cancel_advertisement(ad.account_id, ad.item_id)
                logger.info("Listing %s cancelled on marketplace", ad.item_id)
            except Exception as exc:
                if not is_already_done(exc):
                    logger.error("Failed to cancel listing %s: %s", ad.item_id, exc)
                    return False
                logger.info("Listing %s already gone on marketplace (%s)", ad.item_id, exc)
        else:
            logger.info("Skipping marketplace cancel for placeholder listing %s", ad.item_id)

        self.store.set_advertisement_active(ad.id, False)
        return True

    def retire_for_trade(self, trade: Trade) -> bool:
        ad = self.store.get_advertisement(trade.advertisement_id)
        if ad is None:
            logger.warning("Trade %s has no listing to retire", trade.id)
            return False
        return self.retire(ad)

    def teardown_after_refusal(self, trade: Trade, release_assets: bool = True) -> Optional[bool]:
        """
        Release whatever the order holds, then retire the listing.

        Each step is attempted independently; failures are logged and the
        caller's status change stands.
        """
        ad = self.store.get_advertisement(trade.advertisement_id)
        if ad is None:
            logger.warning("Trade %s has no listing; nothing to tear down", trade.id)
            return None

        if release_assets and trade.order_id and not ad.is_placeholder():
            try:
                self.marketplace.release_assets(ad.account_id, trade.order_id)
                logger.info("Assets released for order %s", trade.order_id)
            except Exception as exc:
                logger.warning("Release for refused order %s failed: %s", trade.order_id, exc)

        return self.retire(ad)
