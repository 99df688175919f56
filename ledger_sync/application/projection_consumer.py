"""
Projection consumer for the promotion and coupon tables.

Applies program events to the off-chain projection with idempotent
writes so that at-least-once delivery (reconnects, backfill overlap,
handler retries) never double-applies an event.
"""

from __future__ import annotations
from contextlib import nullcontext
from decimal import Decimal
from typing import AsyncContextManager, Awaitable, Callable, Dict, Optional

from ..domain.events import EventKind, ObservedEvent
from ..domain.interfaces import ProjectionWriter
from ..utils.logging_setup import get_logger
from ..utils.timezone import from_unix


logger = get_logger(__name__)

EventHandler = Callable[[ObservedEvent], Awaitable[None]]
Transaction = Callable[[], AsyncContextManager[object]]

PROMOTION_COLUMNS = (
    "merchant",
    "discount_percentage",
    "max_supply",
    "current_supply",
    "expiry_timestamp",
    "price",
    "is_active",
)

COUPON_COLUMNS = (
    "promotion",
    "owner",
    "merchant",
    "discount_percentage",
    "is_redeemed",
    "redeemed_at",
    "mint",
)


class ProjectionConsumer:
    """
    Event handlers keeping `promotions` and `coupons` in step with the program.

    Handlers that touch both tables run inside `transaction()` so a failed
    second write rolls back the first and a retry starts clean.

    Usage:
        consumer = ProjectionConsumer(promotions_repo, coupons_repo, db.transaction)
        for kind, handler in consumer.handlers().items():
            dispatcher.on_event(kind, handler)
    """

    def __init__(
        self,
        promotions: ProjectionWriter,
        coupons: ProjectionWriter,
        transaction: Optional[Transaction] = None,
    ):
        self._promotions = promotions
        self._coupons = coupons
        self._transaction: Transaction = transaction or nullcontext

    def handlers(self) -> Dict[EventKind, EventHandler]:
        return {
            EventKind.PROMOTION_CREATED: self.on_promotion_created,
            EventKind.COUPON_MINTED: self.on_coupon_minted,
            EventKind.COUPON_TRANSFERRED: self.on_coupon_transferred,
            EventKind.COUPON_REDEEMED: self.on_coupon_redeemed,
        }

    async def on_promotion_created(self, event: ObservedEvent) -> None:
        data = event.data
        address = data["promotion"]
        created = await self._promotions.insert(
            address,
            {
                "merchant": data["merchant"],
                "discount_percentage": data["discount_percentage"],
                "max_supply": data["max_supply"],
                "current_supply": 0,
                "expiry_timestamp": from_unix(data["expiry_timestamp"]),
                "price": Decimal(data["price"]),
                "is_active": True,
            },
        )
        if created:
            logger.info(f"Promotion projected: {address}")
        else:
            logger.debug(f"Promotion already projected: {address}")

    async def on_coupon_minted(self, event: ObservedEvent) -> None:
        data = event.data
        address = data["coupon"]
        async with self._transaction():
            created = await self._coupons.insert(
                address,
                {
                    "promotion": data["promotion"],
                    "owner": data["recipient"],
                    "merchant": data["merchant"],
                    "discount_percentage": data["discount_percentage"],
                    "is_redeemed": False,
                    "mint": data["nft_mint"],
                },
            )
            if not created:
                logger.debug(f"Coupon already projected: {address}")
                return

            # Supply only moves when the coupon row is new.
            if not await self._promotions.increment(data["promotion"], "current_supply"):
                logger.warning(f"Promotion {data['promotion']} not projected for coupon {address}")
        logger.info(f"Coupon projected: {address}")

    async def on_coupon_transferred(self, event: ObservedEvent) -> None:
        data = event.data
        if await self._coupons.update(data["coupon"], {"owner": data["to"]}):
            logger.info(f"Coupon {data['coupon']} transferred to {data['to']}")
        else:
            logger.warning(f"Transfer for unknown coupon {data['coupon']}")

    async def on_coupon_redeemed(self, event: ObservedEvent) -> None:
        data = event.data
        updated = await self._coupons.update(
            data["coupon"],
            {"is_redeemed": True, "redeemed_at": from_unix(data["timestamp"])},
        )
        if updated:
            logger.info(f"Coupon redeemed: {data['coupon']}")
        else:
            logger.warning(f"Redemption for unknown coupon {data['coupon']}")
