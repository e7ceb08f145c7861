"""Test helpers for the desk engine test suite"""

from tests.helpers.desk_stubs import (
    COUNTERPARTY_USER_ID,
    OUR_USER_ID,
    FakeInbox,
    FakeMarketplace,
    FakePaymentPlatform,
    SeededTrade,
    add_parsed_receipt,
    build_desk,
    minutes_ago,
    seed_trade,
)

__all__ = [
    "COUNTERPARTY_USER_ID",
    "OUR_USER_ID",
    "FakeInbox",
    "FakeMarketplace",
    "FakePaymentPlatform",
    "SeededTrade",
    "add_parsed_receipt",
    "build_desk",
    "minutes_ago",
    "seed_trade",
]
