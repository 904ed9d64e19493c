"""
Cart metadata parsing.

A cart checkout flattens its lines into indexed metadata keys
(``item0_type``, ``item0_quantity``, ``item1_listingId`` ...). The scan
starts at 0 and stops at the first index that has neither a type nor a
listing id.
"""
from dataclasses import dataclass
from typing import Any, Mapping

from app.domain.metadata import get_str, parse_int

ITEM_TYPE_CUSTOM_CARD = "custom-card"
ITEM_TYPE_LIMITED_EDITION = "limited-edition"
ITEM_TYPE_MARKETPLACE = "marketplace"


@dataclass(frozen=True)
class CartItem:
    index: int
    item_type: str | None
    quantity: int
    listing_id: str | None = None
    seller_id: str | None = None
    price_cents: int = 0
    finish: str | None = None
    image_url: str | None = None

    @property
    def is_custom_card(self) -> bool:
        return self.item_type == ITEM_TYPE_CUSTOM_CARD

    @property
    def is_limited_edition(self) -> bool:
        return self.item_type == ITEM_TYPE_LIMITED_EDITION

    @property
    def is_marketplace(self) -> bool:
        return self.item_type == ITEM_TYPE_MARKETPLACE or self.listing_id is not None


def parse_cart_items(metadata: Mapping[str, Any]) -> list[CartItem]:
    items: list[CartItem] = []
    index = 0
    while True:
        prefix = f"item{index}_"
        item_type = get_str(metadata, f"{prefix}type")
        listing_id = get_str(metadata, f"{prefix}listingId")
        if item_type is None and listing_id is None:
            break

        items.append(CartItem(
            index=index,
            item_type=item_type,
            # A line without an explicit quantity counts as nothing for stock
            quantity=parse_int(metadata.get(f"{prefix}quantity"), 0),
            listing_id=listing_id,
            seller_id=get_str(metadata, f"{prefix}sellerId"),
            price_cents=parse_int(metadata.get(f"{prefix}priceCents"), 0),
            finish=get_str(metadata, f"{prefix}finish"),
            image_url=get_str(metadata, f"{prefix}imageUrl"),
        ))
        index += 1
    return items


def parse_legacy_marketplace_items(metadata: Mapping[str, Any]) -> list[CartItem]:
    """Older carts used ``marketplace_item_<N>_listing_id`` style keys"""
    items: list[CartItem] = []
    index = 0
    while True:
        prefix = f"marketplace_item_{index}_"
        listing_id = get_str(metadata, f"{prefix}listing_id")
        if listing_id is None:
            break
        items.append(CartItem(
            index=index,
            item_type=ITEM_TYPE_MARKETPLACE,
            quantity=0,
            listing_id=listing_id,
            seller_id=get_str(metadata, f"{prefix}seller_id"),
            price_cents=parse_int(metadata.get(f"{prefix}price_cents"), 0),
        ))
        index += 1
    return items
