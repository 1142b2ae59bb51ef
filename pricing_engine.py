"""
Sell-price derivation for the pricing console.

The rate card is fixed per engine version. Any change to the constants or the
formula must bump ENGINE_VERSION; the version travels with every sync payload.
"""
import math
import sys
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

ENGINE_VERSION = "1.0.0"

GST_RATES = (0.05, 0.18)

TRANSPORT_PCT = 0.09
DELIVERY_PCT = 0.012
MARGIN_PCT = 0.259


class PricingInputError(ValueError):
    """Raised when pricing inputs fall outside the engine's domain."""


@dataclass(frozen=True)
class DerivedPricing:
    transport_cost: float
    delivery_cost: float
    adjusted_cost: float
    base_selling_price: float
    gst_amount: float
    final_selling_price: float
    margin: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_currency(value: float) -> float:
    """Round to 2 decimal places, half up.

    Examples:
      round_currency(138.877) -> 138.88
      round_currency(138.875) -> 138.88
    """
    scaled = (value + sys.float_info.epsilon) * 100
    if not math.isfinite(scaled):
        raise PricingInputError(f"Amount out of range: {value!r}")
    return math.floor(scaled + 0.5) / 100


def is_valid_gst_rate(gst_rate: Any) -> bool:
    if isinstance(gst_rate, bool):
        return False
    return gst_rate in GST_RATES


def derive_pricing(cost_price: float, gst_rate: float, stock_quantity: Optional[float] = None) -> DerivedPricing:
    """Derive sell price and margin from cost and GST rate.

    stock_quantity does not affect pricing in this engine version.
    """
    if isinstance(cost_price, bool) or not isinstance(cost_price, (int, float)):
        raise PricingInputError(f"cost_price must be a number, got {cost_price!r}")
    if not math.isfinite(cost_price) or cost_price < 0:
        raise PricingInputError(f"cost_price must be finite and >= 0, got {cost_price!r}")
    if not is_valid_gst_rate(gst_rate):
        raise PricingInputError(f"Invalid GST rate: {gst_rate!r}. Must be 0.05 or 0.18")

    transport_cost = cost_price * TRANSPORT_PCT
    delivery_cost = (cost_price + transport_cost) * DELIVERY_PCT
    adjusted_cost = cost_price + transport_cost + delivery_cost

    base_selling_price = round_currency(adjusted_cost * (1 + MARGIN_PCT))
    gst_amount = round_currency(base_selling_price * gst_rate)
    final_selling_price = round_currency(base_selling_price + gst_amount)

    margin = None
    if cost_price > 0:
        margin = (base_selling_price - cost_price) / cost_price

    return DerivedPricing(
        transport_cost=transport_cost,
        delivery_cost=delivery_cost,
        adjusted_cost=adjusted_cost,
        base_selling_price=base_selling_price,
        gst_amount=gst_amount,
        final_selling_price=final_selling_price,
        margin=margin,
    )
