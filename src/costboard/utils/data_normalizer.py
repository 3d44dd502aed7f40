"""
Unit normalization for multi-cloud cost data.

Converts provider-reported raw readings (currency amounts, cents) into USD
and provides the rounding helpers shared by the aggregation layer.
"""

import logging
import math
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

USD = "USD"
CENT_UNITS = {"USD_CENTS", "CENTS"}

DEFAULT_RATES = {"USD": 1.0, "INR": 0.012}


def round_half_up(value: float, places: int = 2) -> float:
    """Round using standard half-up rounding (not banker's rounding)."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


def precise_sum(values: Iterable[float]) -> float:
    """Sum floats through Decimal so long sums do not accumulate binary drift."""
    total = Decimal(0)
    for value in values:
        total += Decimal(repr(float(value)))
    return float(total)


def coerce_amount(raw: Any) -> float | None:
    """Convert a raw reading to a finite float, or None when it is not numeric."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(Decimal(str(raw).strip()))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not math.isfinite(value):
        return None
    return value


class FallbackEvent(BaseModel):
    """Record of an unrecognized unit that was converted with a substitute unit."""

    provider: str | None
    reported_unit: str
    assumed_unit: str
    rate: float
    raw_amount: float
    at: datetime


class UnitNormalizer:
    """Converts raw provider readings to USD using injected conversion rates."""

    def __init__(
        self,
        rates: dict[str, float] | None = None,
        provider_default_units: dict[str, str] | None = None,
        default_unit: str = "INR",
    ):
        """
        Args:
            rates: USD multiplier per currency code (e.g. ``{"INR": 0.012}``)
            provider_default_units: Unit assumed for a provider when it reports
                an unrecognized unit
            default_unit: Unit assumed when the provider has no default
        """
        source = rates if rates is not None else DEFAULT_RATES
        self.rates = {code.upper(): float(rate) for code, rate in source.items()}
        self.rates.setdefault(USD, 1.0)
        self.provider_default_units = {
            name.lower(): unit.upper() for name, unit in (provider_default_units or {}).items()
        }
        self.default_unit = default_unit.upper()
        self.fallback_events: list[FallbackEvent] = []

    @classmethod
    def from_config(cls, normalization: dict[str, Any]) -> "UnitNormalizer":
        return cls(
            rates=normalization.get("rates") or DEFAULT_RATES,
            provider_default_units=normalization.get("provider_default_units") or {},
        )

    def is_recognized(self, unit: str) -> bool:
        unit = (unit or "").strip().upper()
        return unit in self.rates or unit in CENT_UNITS

    def normalize(
        self,
        raw_amount: Any,
        unit: str | None,
        conversion_rate: float | None = None,
        provider: str | None = None,
    ) -> float:
        """
        Convert a raw reading to USD.

        Non-numeric, NaN or infinite input normalizes to 0.0 instead of
        propagating through sums. Negative amounts (credits) pass through.

        Args:
            raw_amount: Reported amount
            unit: Currency code or unit reported by the provider
            conversion_rate: Explicit USD multiplier overriding the configured rate
            provider: Provider name, used to pick the fallback unit

        Returns:
            Amount in USD
        """
        amount = coerce_amount(raw_amount)
        if amount is None:
            logger.warning(
                f"Non-numeric amount {raw_amount!r} from {provider or 'unknown provider'} normalized to 0"
            )
            return 0.0

        normalized_unit = (unit or "").strip().upper()

        if normalized_unit == USD:
            return amount
        if normalized_unit in CENT_UNITS:
            return amount / 100.0
        if normalized_unit in self.rates:
            rate = conversion_rate if conversion_rate is not None else self.rates[normalized_unit]
            return amount * rate

        return self._normalize_unrecognized(amount, normalized_unit, conversion_rate, provider)

    def _normalize_unrecognized(
        self, amount: float, unit: str, conversion_rate: float | None, provider: str | None
    ) -> float:
        assumed = self.provider_default_units.get((provider or "").lower(), self.default_unit)
        if assumed in CENT_UNITS:
            rate = 0.01
            converted = amount / 100.0
        else:
            rate = conversion_rate if conversion_rate is not None else self.rates.get(assumed, 1.0)
            converted = amount * rate

        self.fallback_events.append(
            FallbackEvent(
                provider=provider,
                reported_unit=unit or "<empty>",
                assumed_unit=assumed,
                rate=rate,
                raw_amount=amount,
                at=datetime.now(timezone.utc),
            )
        )
        logger.warning(
            f"Unrecognized unit '{unit or '<empty>'}' from {provider or 'unknown provider'}; "
            f"treating {amount} as {assumed} at rate {rate}"
        )
        return converted


_default_normalizer = UnitNormalizer()


def normalize(
    raw_amount: Any,
    unit: str | None,
    conversion_rate: float | None = None,
    provider: str | None = None,
) -> float:
    """Normalize with the module default rates (USD, INR)."""
    return _default_normalizer.normalize(raw_amount, unit, conversion_rate, provider)
