"""Stripe product lookup for plans and addon seats."""
from typing import Any, Optional

import structlog

from edubilling.adapters.stripe_adapter import StripeAdapter
from edubilling.cache import ProductCache, cache_key
from edubilling.models.plan import Plan
from edubilling.schemas.checkout import PriceBreakdown
from edubilling.services.plan_catalog import AddonKind

logger = structlog.get_logger(__name__)

ADDON_PRODUCTS = {
    AddonKind.TEACHER: ("Additional Teachers", "Extra teacher seats on top of the plan limit"),
    AddonKind.STUDENT: ("Additional Students", "Extra student seats on top of the plan limit"),
}


class ProductResolver:
    """
    Resolves the Stripe product each line item is priced against.

    Product IDs are looked up through the product cache first and only then
    searched or created in Stripe, so repeated checkouts cost no extra API
    calls. Prices are always sent inline as ``price_data``.
    """

    def __init__(self, processor: StripeAdapter, cache: ProductCache):
        self.processor = processor
        self.cache = cache

    async def _resolve(self, key: str, name: str, description: str) -> str:
        product_id = await self.cache.get(key)
        if product_id:
            return product_id

        product_id = await self.processor.find_or_create_product(name, description)
        await self.cache.put(key, product_id)
        logger.info("stripe_product_resolved", cache_key=key, product_id=product_id)
        return product_id

    async def plan_product(self, plan: Plan) -> str:
        """Stripe product of a plan's base price."""
        return await self._resolve(cache_key("plan", plan.slug), f"{plan.name} Plan", plan.description or plan.name)

    async def addon_product(self, kind: AddonKind) -> str:
        """Stripe product for an addon seat kind."""
        name, description = ADDON_PRODUCTS[kind]
        return await self._resolve(cache_key("addon", kind.value), name, description)

    async def line_items(self, plan: Plan, breakdown: PriceBreakdown) -> list[dict[str, Any]]:
        """
        Line items for a priced plan: the base plan, then one item per addon kind bought.

        Returns:
            Items as ``{"product_id", "unit_amount", "quantity"}``
        """
        items = [{"product_id": await self.plan_product(plan), "unit_amount": breakdown.base_price, "quantity": 1}]
        for kind, seats, unit in (
            (AddonKind.TEACHER, breakdown.teacher_seats, breakdown.teacher_unit_price),
            (AddonKind.STUDENT, breakdown.student_seats, breakdown.student_unit_price),
        ):
            if seats > 0:
                items.append({"product_id": await self.addon_product(kind), "unit_amount": unit, "quantity": seats})
        return items

    async def base_item(self, plan: Plan, items: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
        """Pick the base plan item out of a subscription's items."""
        if not items:
            return None
        addon_ids = set()
        for kind in AddonKind:
            cached = await self.cache.get(cache_key("addon", kind.value))
            if cached:
                addon_ids.add(cached)
        plan_product = await self.cache.get(cache_key("plan", plan.slug))
        for item in items:
            if plan_product and item["product_id"] == plan_product:
                return item
        non_addon = [item for item in items if item["product_id"] not in addon_ids]
        return non_addon[0] if non_addon else items[0]
