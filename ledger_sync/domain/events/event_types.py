"""Signal types and ledger event kinds for the signal dispatcher."""

from __future__ import annotations
from enum import Enum
from typing import Optional


class EventKind(Enum):
    """Events emitted by the discount platform program (IDL event names)."""
    MARKETPLACE_INITIALIZED = "MarketplaceInitialized"
    MERCHANT_REGISTERED = "MerchantRegistered"
    PROMOTION_CREATED = "PromotionCreated"
    COUPON_MINTED = "CouponMinted"
    COUPON_TRANSFERRED = "CouponTransferred"
    COUPON_REDEEMED = "CouponRedeemed"
    COUPON_LISTED = "CouponListed"
    LISTING_CANCELLED = "ListingCancelled"
    COUPON_SOLD = "CouponSold"
    MERCHANT_RATED = "MerchantRated"
    REWARDS_STAKED = "RewardsStaked"
    REWARDS_CLAIMED = "RewardsClaimed"
    PROMOTION_RATED = "PromotionRated"
    EXTERNAL_DEAL_UPDATED = "ExternalDealUpdated"
    COMMENT_LIKED = "CommentLiked"
    COMMENT_ADDED = "CommentAdded"
    BADGE_EARNED = "BadgeEarned"
    TICKET_GENERATED = "TicketGenerated"
    TICKET_REDEEMED = "TicketRedeemed"
    GROUP_DEAL_CREATED = "GroupDealCreated"
    GROUP_DEAL_JOINED = "GroupDealJoined"
    GROUP_DEAL_FINALIZED = "GroupDealFinalized"
    GROUP_DEAL_REFUNDED = "GroupDealRefunded"
    AUCTION_CREATED = "AuctionCreated"
    BID_PLACED = "BidPlaced"
    AUCTION_FINALIZED = "AuctionFinalized"
    AUCTION_CANCELLED = "AuctionCancelled"

    @classmethod
    def from_name(cls, name: str) -> Optional["EventKind"]:
        """Look up a kind by IDL event name, or None if the program added one we don't know."""
        try:
            return cls(name)
        except ValueError:
            return None


class SignalType(Enum):
    """Operational signals published by the sync core."""
    LEDGER_EVENT = "ledger-event"
    EVENT = "event"  # keyed by EventKind
    PARSE_ERROR = "parse-error"
    TRANSACTION_FINALIZED = "transaction-finalized"
    EVENT_FINALIZED = "event-finalized"  # keyed by EventKind
    POTENTIAL_REORG = "potential-reorg"
    HIGH_ERROR_RATE = "high-error-rate"
    MAX_RECONNECT_ATTEMPTS_REACHED = "max-reconnect-attempts-reached"

    @property
    def is_keyed(self) -> bool:
        """Whether handlers for this signal are registered per EventKind."""
        return self in (SignalType.EVENT, SignalType.EVENT_FINALIZED)

    def wire_name(self, kind: Optional[EventKind] = None) -> str:
        """
        Operational name used in logs and alerts.

        EVENT → "<EventName>", EVENT_FINALIZED → "<EventName>-finalized".
        """
        if self is SignalType.EVENT and kind is not None:
            return kind.value
        if self is SignalType.EVENT_FINALIZED and kind is not None:
            return f"{kind.value}-finalized"
        return self.value
