"""Tests for ProjectionConsumer."""

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock

import pytest

from ledger_sync.application import ProjectionConsumer
from ledger_sync.domain.events import EventKind, observed

PROMOTION_CREATED = {
    "promotion": "promo-1",
    "merchant": "merchant-1",
    "discount_percentage": 25,
    "max_supply": 100,
    "expiry_timestamp": 1_900_000_000,
    "price": 1_500_000,
}

COUPON_MINTED = {
    "coupon": "coupon-1",
    "promotion": "promo-1",
    "recipient": "alice",
    "merchant": "merchant-1",
    "discount_percentage": 25,
    "nft_mint": "mint-1",
}


@pytest.fixture
def promotions(projection_store: Any) -> Any:
    return projection_store


@pytest.fixture
def coupons(make_projection_store: Any) -> Any:
    return make_projection_store()


@pytest.fixture
def consumer(promotions: Any, coupons: Any) -> ProjectionConsumer:
    return ProjectionConsumer(promotions, coupons)


class TestProjectionConsumer:
    """Idempotent projection writes per event kind."""

    def test_handlers_cover_projected_kinds(self, consumer: ProjectionConsumer) -> None:
        assert set(consumer.handlers()) == {
            EventKind.PROMOTION_CREATED,
            EventKind.COUPON_MINTED,
            EventKind.COUPON_TRANSFERRED,
            EventKind.COUPON_REDEEMED,
        }

    @pytest.mark.asyncio
    async def test_promotion_created(self, consumer: ProjectionConsumer, promotions: Any) -> None:
        await consumer.on_promotion_created(
            observed(EventKind.PROMOTION_CREATED, PROMOTION_CREATED, "tx-1", 10)
        )

        fields = promotions.rows["promo-1"]["fields"]
        assert fields["current_supply"] == 0
        assert fields["is_active"] is True
        assert fields["price"] == Decimal(1_500_000)
        assert fields["expiry_timestamp"] == datetime.fromtimestamp(1_900_000_000, timezone.utc)

    @pytest.mark.asyncio
    async def test_mint_increments_supply_once(
        self, consumer: ProjectionConsumer, promotions: Any, coupons: Any
    ) -> None:
        """Redelivered mints neither duplicate the coupon nor bump supply again."""
        await consumer.on_promotion_created(
            observed(EventKind.PROMOTION_CREATED, PROMOTION_CREATED, "tx-1", 10)
        )
        minted = observed(EventKind.COUPON_MINTED, COUPON_MINTED, "tx-2", 11)

        await consumer.on_coupon_minted(minted)
        await consumer.on_coupon_minted(minted)

        assert promotions.rows["promo-1"]["fields"]["current_supply"] == 1
        coupon = coupons.rows["coupon-1"]["fields"]
        assert coupon["owner"] == "alice"
        assert coupon["mint"] == "mint-1"
        assert coupon["is_redeemed"] is False

    @pytest.mark.asyncio
    async def test_failed_increment_rolls_back_coupon_for_retry(
        self, promotions: Any, coupons: Any
    ) -> None:
        """Insert and supply bump commit together, so a retried mint still counts."""

        @asynccontextmanager
        async def transaction() -> AsyncIterator[None]:
            saved = copy.deepcopy(coupons.rows)
            try:
                yield
            except Exception:
                coupons.rows = saved
                raise

        consumer = ProjectionConsumer(promotions, coupons, transaction)
        await consumer.on_promotion_created(
            observed(EventKind.PROMOTION_CREATED, PROMOTION_CREATED, "tx-1", 10)
        )
        minted = observed(EventKind.COUPON_MINTED, COUPON_MINTED, "tx-2", 11)
        increment = promotions.increment
        promotions.increment = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(RuntimeError):
            await consumer.on_coupon_minted(minted)
        assert "coupon-1" not in coupons.rows

        promotions.increment = increment
        await consumer.on_coupon_minted(minted)

        assert "coupon-1" in coupons.rows
        assert promotions.rows["promo-1"]["fields"]["current_supply"] == 1

    @pytest.mark.asyncio
    async def test_mint_for_unknown_promotion_still_projects_coupon(
        self, consumer: ProjectionConsumer, coupons: Any
    ) -> None:
        await consumer.on_coupon_minted(observed(EventKind.COUPON_MINTED, COUPON_MINTED, "tx-2", 11))

        assert "coupon-1" in coupons.rows

    @pytest.mark.asyncio
    async def test_transfer_updates_owner(self, consumer: ProjectionConsumer, coupons: Any) -> None:
        await consumer.on_coupon_minted(observed(EventKind.COUPON_MINTED, COUPON_MINTED, "tx-2", 11))

        await consumer.on_coupon_transferred(
            observed(EventKind.COUPON_TRANSFERRED, {"coupon": "coupon-1", "from": "alice", "to": "bob"}, "tx-3", 12)
        )

        assert coupons.rows["coupon-1"]["fields"]["owner"] == "bob"

    @pytest.mark.asyncio
    async def test_redeem_marks_coupon(self, consumer: ProjectionConsumer, coupons: Any) -> None:
        await consumer.on_coupon_minted(observed(EventKind.COUPON_MINTED, COUPON_MINTED, "tx-2", 11))

        await consumer.on_coupon_redeemed(
            observed(EventKind.COUPON_REDEEMED, {"coupon": "coupon-1", "timestamp": 1_800_000_000}, "tx-4", 13)
        )

        fields = coupons.rows["coupon-1"]["fields"]
        assert fields["is_redeemed"] is True
        assert fields["redeemed_at"] == datetime.fromtimestamp(1_800_000_000, timezone.utc)

    @pytest.mark.asyncio
    async def test_transfer_of_unknown_coupon_is_ignored(
        self, consumer: ProjectionConsumer, coupons: Any
    ) -> None:
        await consumer.on_coupon_transferred(
            observed(EventKind.COUPON_TRANSFERRED, {"coupon": "nope", "from": "a", "to": "b"}, "tx-3", 12)
        )

        assert coupons.rows == {}
