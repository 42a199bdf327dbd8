"""
Shipping Cost Service - Aggregator cost, desi rate tables and fallbacks
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import TransientError
from backoffice.integrations.basit_kargo import BasitKargoClient, ShipmentCost
from backoffice.models import (
    Integration, Order, OrderReturn, Provider, ShippingCarrier, ShippingRate, ShippingRateTable,
)
from backoffice.services.money import to_minor_units, round_half_up

logger = logging.getLogger(__name__)

SOURCE_AGGREGATOR = "aggregator"
SOURCE_RATE_TABLE = "rate_table"
SOURCE_PRIOR = "prior"


@dataclass
class ShippingCostBreakdown:
    """Minor units"""
    cost_excluding_vat: int
    vat_rate: Decimal
    vat_amount: int
    total_cost: int
    source: str
    rate_id: Optional[object] = None


def split_vat(amount: int, vat_included: bool, vat_rate: Decimal) -> tuple:
    """-> (excluding_vat, vat_amount, total)"""
    factor = Decimal(vat_rate) / 100
    if vat_included:
        excluding = round_half_up(Decimal(amount) / (1 + factor))
        return excluding, amount - excluding, amount
    vat = round_half_up(Decimal(amount) * factor)
    return amount, vat, amount + vat


def default_aggregator_client(integration: Integration) -> BasitKargoClient:
    return BasitKargoClient(integration.settings or {}, timeout=settings.HTTP_TIMEOUT_SECONDS)


class ShippingCostService:
    """
    Three tiers, first hit wins: aggregator actual cost -> rate table -> prior value.
    Never silently zero.
    """

    def __init__(
        self,
        db: Session,
        aggregator_factory: Callable[[Integration], BasitKargoClient] = None,
    ):
        self.db = db
        self.aggregator_factory = aggregator_factory or default_aggregator_client

    @property
    def default_vat_rate(self) -> Decimal:
        return Decimal(str(settings.DEFAULT_SHIPPING_VAT_RATE))

    # ========== Rate Table ==========

    def find_rate_for_desi(
        self,
        carrier: ShippingCarrier,
        desi: Decimal,
        rate_table: Optional[ShippingRateTable] = None,
    ) -> Optional[ShippingRate]:
        if rate_table is None:
            rate_table = self.db.query(ShippingRateTable).filter(
                ShippingRateTable.is_active.is_(True)
            ).order_by(ShippingRateTable.created_at.desc()).first()
        if rate_table is None:
            return None

        return self.db.query(ShippingRate).filter(
            ShippingRate.rate_table_id == rate_table.id,
            ShippingRate.carrier == carrier.value,
            ShippingRate.desi_from <= desi,
            or_(ShippingRate.desi_to.is_(None), ShippingRate.desi_to >= desi),
        ).order_by(ShippingRate.desi_from.desc()).first()

    def calculate_from_rate_table(self, carrier_name: Optional[str], desi) -> Optional[ShippingCostBreakdown]:
        carrier = ShippingCarrier.from_string(carrier_name)
        if carrier is None or desi is None:
            return None

        rate = self.find_rate_for_desi(carrier, Decimal(str(desi)))
        if rate is None:
            logger.info(f"No shipping rate for {carrier.value} at {desi} desi")
            return None

        vat_rate = Decimal(str(rate.vat_rate)) if rate.vat_rate is not None else self.default_vat_rate
        vat_amount = rate.vat_amount if rate.vat_amount is not None else round_half_up(
            Decimal(rate.price_excluding_vat) * vat_rate / 100
        )
        return ShippingCostBreakdown(
            cost_excluding_vat=rate.price_excluding_vat,
            vat_rate=vat_rate,
            vat_amount=vat_amount,
            total_cost=rate.total_price or rate.price_excluding_vat + vat_amount,
            source=SOURCE_RATE_TABLE,
            rate_id=rate.id,
        )

    # ========== Aggregator ==========

    def aggregator_integration(self, order: Order) -> Optional[Integration]:
        if not order.shipping_aggregator_integration_id:
            return None
        integration = self.db.get(Integration, order.shipping_aggregator_integration_id)
        if integration is None or not integration.is_active or integration.provider != Provider.BASIT_KARGO.value:
            return None
        return integration

    def breakdown_from_aggregator(
        self,
        cost: ShipmentCost,
        vat_included: bool,
        return_leg: bool = False,
    ) -> Optional[ShippingCostBreakdown]:
        amount = cost.return_leg_cost if return_leg else cost.shipment_fee
        minor = to_minor_units(amount, "TRY")
        if minor <= 0:
            return None
        excluding, vat, total = split_vat(minor, vat_included, self.default_vat_rate)
        return ShippingCostBreakdown(
            cost_excluding_vat=excluding,
            vat_rate=self.default_vat_rate,
            vat_amount=vat,
            total_cost=total,
            source=SOURCE_AGGREGATOR,
        )

    def fetch_aggregator_cost(self, order: Order, return_leg: bool = False) -> Optional[ShippingCostBreakdown]:
        """Live lookup; transient failures fall through to the next tier"""
        integration = self.aggregator_integration(order)
        if integration is None or not order.shipping_tracking_number:
            return None

        client = self.aggregator_factory(integration)
        try:
            cost = client.get_shipment_cost(order.shipping_tracking_number)
        except TransientError as e:
            logger.warning(f"Aggregator cost lookup failed for order {order.order_number}: {e}")
            return None
        if cost is None:
            return None
        return self.breakdown_from_aggregator(cost, client.vat_included, return_leg=return_leg)

    # ========== Outbound ==========

    def outbound_cost(self, order: Order) -> Optional[ShippingCostBreakdown]:
        if order.shipping_cost_source == SOURCE_AGGREGATOR and order.shipping_cost_excluding_vat is not None:
            return self._prior(order, SOURCE_AGGREGATOR)

        breakdown = self.fetch_aggregator_cost(order)
        if breakdown is None:
            breakdown = self.calculate_from_rate_table(order.shipping_carrier, order.shipping_desi)
        if breakdown is None:
            breakdown = self._prior(order, SOURCE_PRIOR)
        return breakdown

    def apply_outbound(self, order: Order) -> Optional[ShippingCostBreakdown]:
        breakdown = self.outbound_cost(order)
        if breakdown is None:
            return None
        order.shipping_cost_excluding_vat = breakdown.cost_excluding_vat
        order.shipping_vat_rate = breakdown.vat_rate
        order.shipping_vat_amount = breakdown.vat_amount
        if breakdown.source != SOURCE_PRIOR:
            order.shipping_cost_source = breakdown.source
            order.shipping_rate_id = breakdown.rate_id
        return breakdown

    def record_aggregator_cost(self, order: Order, cost: ShipmentCost, vat_included: bool) -> Optional[ShippingCostBreakdown]:
        """Store an aggregator-reported actual cost on the order"""
        breakdown = self.breakdown_from_aggregator(cost, vat_included)
        if breakdown is None:
            return None
        order.shipping_cost_excluding_vat = breakdown.cost_excluding_vat
        order.shipping_vat_rate = breakdown.vat_rate
        order.shipping_vat_amount = breakdown.vat_amount
        order.shipping_cost_source = SOURCE_AGGREGATOR
        order.shipping_rate_id = None
        if cost.desi is not None and order.shipping_desi is None:
            order.shipping_desi = cost.desi
        return breakdown

    # ========== Return Leg ==========

    def return_cost(self, order_return: OrderReturn, order: Order) -> Optional[ShippingCostBreakdown]:
        breakdown = self.fetch_aggregator_cost(order, return_leg=True)
        if breakdown is None:
            carrier = order_return.return_shipping_carrier or order.shipping_carrier
            desi = order_return.return_shipping_desi or order.shipping_desi
            breakdown = self.calculate_from_rate_table(carrier, desi)
        if breakdown is None:
            breakdown = self._prior(order_return, SOURCE_PRIOR, prefix="return_shipping_")
        if breakdown is None:
            breakdown = self._prior(order, SOURCE_PRIOR)
        return breakdown

    def apply_return(self, order_return: OrderReturn, order: Order) -> Optional[ShippingCostBreakdown]:
        breakdown = self.return_cost(order_return, order)
        if breakdown is None:
            return None
        order_return.return_shipping_cost_excluding_vat = breakdown.cost_excluding_vat
        order_return.return_shipping_vat_rate = breakdown.vat_rate
        order_return.return_shipping_vat_amount = breakdown.vat_amount
        order_return.return_shipping_rate_id = breakdown.rate_id
        if not order_return.return_shipping_carrier:
            order_return.return_shipping_carrier = order.shipping_carrier
        return breakdown

    # ========== Helpers ==========

    def _prior(self, entity, source: str, prefix: str = "shipping_") -> Optional[ShippingCostBreakdown]:
        """Cost already stored on an order (shipping_*) or a return (return_shipping_*)"""
        cost = getattr(entity, f"{prefix}cost_excluding_vat")
        if cost is None:
            return None
        stored_rate = getattr(entity, f"{prefix}vat_rate")
        vat_rate = Decimal(str(stored_rate)) if stored_rate is not None else self.default_vat_rate
        vat_amount = getattr(entity, f"{prefix}vat_amount") or 0
        return ShippingCostBreakdown(
            cost_excluding_vat=cost,
            vat_rate=vat_rate,
            vat_amount=vat_amount,
            total_cost=cost + vat_amount,
            source=source,
            rate_id=getattr(entity, f"{prefix}rate_id"),
        )
