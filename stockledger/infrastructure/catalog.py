from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from stockledger.domain.errors import NotFound
from stockledger.domain.models import Item, Variant


class CatalogReader:
    """Read-only access to catalog items and variants."""

    def get_item(self, session: Session, item_id: int, active_only: bool = False) -> Item:
        item = session.get(Item, item_id)
        if item is None or (active_only and not item.is_active):
            raise NotFound("Item", "id", item_id)
        return item

    def get_variant(
        self,
        session: Session,
        variant_id: int,
        item_id: Optional[int] = None,
        active_only: bool = False,
    ) -> Variant:
        variant = session.get(Variant, variant_id)
        if variant is None or (active_only and not variant.is_active):
            raise NotFound("Variant", "id", variant_id)
        if item_id is not None and variant.item_id != item_id:
            # a variant of another item is as good as missing
            raise NotFound("Variant", "item_id/variant_id", f"{item_id}/{variant_id}")
        return variant

    @staticmethod
    def unit_price(item: Item, variant: Optional[Variant] = None) -> Decimal:
        price = Decimal(item.base_price or 0)
        if variant is not None and variant.price_adjustment is not None:
            price += Decimal(variant.price_adjustment)
        return price
