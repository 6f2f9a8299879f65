"""
Tier evaluation for volume, tiered and container-size rate tables.

Strategy pattern: each tier method is a separate class, dispatched via the
TIER_STRATEGIES registry keyed by royalty_rule.tier_method.

- marginal: the basis is split across bands, each band charged at its own rate
- total:    the whole basis is charged at the rate of the band containing the
            group's cumulative period total (blended / retroactive rebate)

Band subtotals are kept unrounded for the audit breakdown; rounding happens
once, on the final fee, via TierEvaluator.round().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, ROUND_UP
from types import MappingProxyType
from typing import Dict, Hashable, List, Mapping, Optional, Sequence, Tuple, Type
import logging

from models.royalty import (
    ContainerSizeRate,
    RoundingMode,
    TierBasis,
    TierMethod,
    VolumeTier,
)
from services.royalty.errors import RuleValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

DECIMAL_ROUNDING = {
    RoundingMode.HALF_UP: ROUND_HALF_UP,
    RoundingMode.DOWN: ROUND_DOWN,
    RoundingMode.UP: ROUND_UP,
}


# =============================================================================
# Results and accumulator
# =============================================================================

@dataclass(frozen=True)
class TierBand:
    """Portion of the basis charged within one tier (unrounded)."""
    tier_index: int
    lower: Decimal
    upper: Optional[Decimal]
    rate: Decimal
    units: Decimal
    subtotal: Decimal

    def as_dict(self) -> Dict[str, str]:
        return {
            "tier": str(self.tier_index + 1),
            "lower": str(self.lower),
            "upper": str(self.upper) if self.upper is not None else "open",
            "rate": str(self.rate),
            "units": str(self.units),
            "subtotal": str(self.subtotal),
        }


@dataclass(frozen=True)
class TierResult:
    """Unrounded outcome of a tier evaluation."""
    amount: Decimal
    applied_rate: Decimal
    tier_applied: str
    bands: Tuple[TierBand, ...] = ()


@dataclass(frozen=True)
class TierAccumulator:
    """
    Cumulative basis per tier group for one period.

    Immutable: add() returns a new accumulator, so a run's fold can be
    replayed and tested step by step.
    """
    totals: Mapping[Hashable, Decimal] = field(default_factory=lambda: MappingProxyType({}))

    def add(self, key: Hashable, amount: Decimal) -> "TierAccumulator":
        updated = dict(self.totals)
        updated[key] = updated.get(key, ZERO) + amount
        return TierAccumulator(MappingProxyType(updated))

    def total(self, key: Hashable) -> Decimal:
        return self.totals.get(key, ZERO)


# =============================================================================
# Validation and helpers
# =============================================================================

def validate_tiers(tiers: Sequence[VolumeTier], rule_name: Optional[str] = None) -> None:
    """
    Reject unsorted, overlapping or otherwise malformed tier tables.

    Bands may touch (``max`` of one equal to ``min`` of the next) but not
    overlap. Only the last band may have an open ``max``.

    Raises:
        RuleValidationError: If the table is malformed
    """
    previous = None
    for index, tier in enumerate(tiers):
        if tier.rate < 0:
            raise RuleValidationError(f"tier {index + 1} has a negative rate", rule_name)
        if tier.min < 0:
            raise RuleValidationError(f"tier {index + 1} has a negative minimum", rule_name)
        if tier.max is not None and tier.max < tier.min:
            raise RuleValidationError(
                f"tier {index + 1} max {tier.max} is below its min {tier.min}", rule_name
            )
        if tier.max is None and index != len(tiers) - 1:
            raise RuleValidationError(
                f"tier {index + 1} has an open max but is not the last tier", rule_name
            )
        if previous is not None:
            if tier.min < previous.min:
                raise RuleValidationError("tiers are not sorted ascending by min", rule_name)
            if tier.min < previous.max:
                raise RuleValidationError(
                    f"tier {index + 1} overlaps tier {index} "
                    f"({tier.min} < {previous.max})",
                    rule_name,
                )
        previous = tier


def validate_container_sizes(rates: Sequence[ContainerSizeRate], rule_name: Optional[str] = None) -> None:
    seen = set()
    for rate in rates:
        key = rate.size.strip().lower()
        if key in seen:
            raise RuleValidationError(f"container size '{rate.size}' defined twice", rule_name)
        seen.add(key)
        if rate.base_rate < 0 or (rate.discounted_rate is not None and rate.discounted_rate < 0):
            raise RuleValidationError(f"container size '{rate.size}' has a negative rate", rule_name)


def rate_factor(rate: Decimal, tier_basis: TierBasis) -> Decimal:
    """Per-unit rates apply as-is; amount-based rates are percentages."""
    if tier_basis == TierBasis.AMOUNT:
        return rate / HUNDRED
    return rate


def tier_label(index: int, tier: VolumeTier) -> str:
    upper = str(tier.max) if tier.max is not None else "+"
    return f"Tier {index + 1} ({tier.min}-{upper})"


def find_tier(tiers: Sequence[VolumeTier], value: Decimal) -> Tuple[int, VolumeTier]:
    """Return the last tier whose min is at or below ``value`` (first tier if none)."""
    found = 0
    for index, tier in enumerate(tiers):
        if value >= tier.min:
            found = index
        else:
            break
    return found, tiers[found]


def _signed(result: TierResult, sign: int) -> TierResult:
    if sign > 0:
        return result
    return TierResult(
        amount=-result.amount,
        applied_rate=result.applied_rate,
        tier_applied=result.tier_applied,
        bands=tuple(
            TierBand(
                tier_index=band.tier_index,
                lower=band.lower,
                upper=band.upper,
                rate=band.rate,
                units=-band.units,
                subtotal=-band.subtotal,
            )
            for band in result.bands
        ),
    )


# =============================================================================
# Strategies
# =============================================================================

class BaseTierStrategy(ABC):
    """Abstract base for tier application methods."""

    @abstractmethod
    def evaluate(
        self,
        tiers: Sequence[VolumeTier],
        basis: Decimal,
        cumulative_total: Decimal,
        tier_basis: TierBasis,
    ) -> TierResult:
        """
        Evaluate a non-negative basis against a sorted tier table.

        Args:
            tiers: Validated, ascending tier table
            basis: This transaction's quantity or amount (>= 0)
            cumulative_total: Group total for the period, used by blended tiers
            tier_basis: Whether rates are per unit or percentages

        Returns:
            Unrounded TierResult
        """
        pass


class MarginalTierStrategy(BaseTierStrategy):
    """
    Each band is charged at its own rate.

    Band capacity is ``max - min``; the last band absorbs whatever remains,
    even when its max is set. For tiers {0-4999: 1.25, 5000-14999: 1.10}
    and 6,500 units: 4999 x 1.25 + 1501 x 1.10.
    """

    def evaluate(self, tiers, basis, cumulative_total, tier_basis):
        remaining = basis
        bands: List[TierBand] = []
        last_index = len(tiers) - 1

        for index, tier in enumerate(tiers):
            if remaining <= 0:
                break
            if tier.max is None or index == last_index:
                units = remaining
            else:
                units = min(remaining, tier.max - tier.min)
            if units <= 0:
                continue
            subtotal = units * rate_factor(tier.rate, tier_basis)
            bands.append(TierBand(
                tier_index=index,
                lower=tier.min,
                upper=tier.max,
                rate=tier.rate,
                units=units,
                subtotal=subtotal,
            ))
            remaining -= units

        amount = sum((band.subtotal for band in bands), ZERO)
        if bands:
            top = bands[-1]
            tier_applied = tier_label(top.tier_index, tiers[top.tier_index])
            applied_rate = amount / basis if basis else top.rate
        else:
            tier_applied = tier_label(0, tiers[0])
            applied_rate = tiers[0].rate

        return TierResult(
            amount=amount,
            applied_rate=applied_rate,
            tier_applied=tier_applied,
            bands=tuple(bands),
        )


class BlendedTierStrategy(BaseTierStrategy):
    """
    The whole basis is charged at the single rate of the tier containing the
    cumulative period total for the group.

    Tiers {0-999,999: 0%, 1,000,000-2,499,999: 2%, >=2,500,000: 4%} with
    $3,000,000 of quarterly purchases: 3,000,000 x 4% = 120,000.
    """

    def evaluate(self, tiers, basis, cumulative_total, tier_basis):
        index, tier = find_tier(tiers, cumulative_total)
        subtotal = basis * rate_factor(tier.rate, tier_basis)
        band = TierBand(
            tier_index=index,
            lower=tier.min,
            upper=tier.max,
            rate=tier.rate,
            units=basis,
            subtotal=subtotal,
        )
        return TierResult(
            amount=subtotal,
            applied_rate=tier.rate,
            tier_applied=tier_label(index, tier),
            bands=(band,),
        )


TIER_STRATEGIES: Dict[TierMethod, Type[BaseTierStrategy]] = {
    TierMethod.MARGINAL: MarginalTierStrategy,
    TierMethod.TOTAL: BlendedTierStrategy,
}


# =============================================================================
# Evaluator
# =============================================================================

class TierEvaluator:
    """
    Pure numeric evaluator for tiered and container-size rate tables.

    Usage:
        evaluator = TierEvaluator()
        result = evaluator.evaluate(rule.volume_tiers, Decimal('6500'))
        fee = evaluator.round(result.amount)
    """

    def __init__(
        self,
        rounding_mode: RoundingMode = RoundingMode.HALF_UP,
        decimal_places: int = 2,
    ):
        self.rounding_mode = rounding_mode
        self.quantum = Decimal(1).scaleb(-decimal_places)

    def round(self, amount: Decimal) -> Decimal:
        """Apply the configured final rounding."""
        return amount.quantize(self.quantum, rounding=DECIMAL_ROUNDING[self.rounding_mode])

    def evaluate(
        self,
        tiers: Sequence[VolumeTier],
        basis: Decimal,
        method: TierMethod = TierMethod.MARGINAL,
        tier_basis: TierBasis = TierBasis.QUANTITY,
        cumulative_total: Optional[Decimal] = None,
    ) -> TierResult:
        """
        Evaluate a tier table.

        Negative bases (returns) use the same tier math on the absolute value
        with the sign restored on the result.

        Args:
            tiers: Tier table, validated at rule load
            basis: Quantity or amount for this transaction
            method: marginal or total
            tier_basis: quantity (per-unit rates) or amount (percentages)
            cumulative_total: Group period total for blended tiers;
                defaults to the basis itself

        Returns:
            Unrounded TierResult
        """
        if not tiers:
            raise RuleValidationError("tier table is empty")

        ordered = sorted(tiers, key=lambda t: t.min)
        sign = -1 if basis < 0 else 1
        if cumulative_total is None:
            cumulative_total = abs(basis)

        strategy = TIER_STRATEGIES[method]()
        result = strategy.evaluate(ordered, abs(basis), cumulative_total, tier_basis)
        return _signed(result, sign)

    def evaluate_container_size(
        self,
        rates: Sequence[ContainerSizeRate],
        size: Optional[str],
        volume: Decimal,
        cumulative_volume: Optional[Decimal] = None,
    ) -> Optional[TierResult]:
        """
        Price a volume for one container size.

        ``base_rate`` applies below ``volume_threshold``, ``discounted_rate``
        at or above it, judged on the cumulative per-size volume.

        Returns:
            TierResult, or None when the size has no rate card
        """
        card = find_container_rate(rates, size)
        if card is None:
            return None

        if cumulative_volume is None:
            cumulative_volume = abs(volume)

        discounted = (
            card.volume_threshold is not None
            and card.discounted_rate is not None
            and cumulative_volume >= card.volume_threshold
        )
        rate = card.discounted_rate if discounted else card.base_rate
        label = f"{card.size} {'discounted' if discounted else 'base'} rate"

        return TierResult(
            amount=volume * rate,
            applied_rate=rate,
            tier_applied=label,
            bands=(TierBand(
                tier_index=1 if discounted else 0,
                lower=card.volume_threshold if discounted else ZERO,
                upper=None if discounted else card.volume_threshold,
                rate=rate,
                units=volume,
                subtotal=volume * rate,
            ),),
        )


def find_container_rate(rates: Sequence[ContainerSizeRate], size: Optional[str]) -> Optional[ContainerSizeRate]:
    """Case-insensitive lookup of a container size rate card."""
    if not size:
        return None
    wanted = size.strip().lower()
    for rate in rates:
        if rate.size.strip().lower() == wanted:
            return rate
    return None
