"""
Royalty Engine Configuration

Environment variables and constants for calculation runs.
"""

import os
from dataclasses import dataclass
from decimal import Decimal

from models.royalty import CalculationApproach, RoundingMode


INCOMPLETE_POLICY_FALLBACK = "fallback"
INCOMPLETE_POLICY_HALT = "halt"


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for the royalty calculation engine."""

    # Final rounding applied once to each fee
    rounding_mode: RoundingMode = RoundingMode.HALF_UP
    decimal_places: int = 2

    # What to do when an ERP-path rule has no fully mapped blueprint:
    # 'fallback' evaluates the manual rule, 'halt' fails the run
    incomplete_blueprint_policy: str = INCOMPLETE_POLICY_FALLBACK

    # A fee above gross_amount x tolerance is rejected
    safety_tolerance: Decimal = Decimal("1.01")

    # Used when the organization has no calculation approach configured
    default_approach: CalculationApproach = CalculationApproach.MANUAL

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables."""
        policy = os.getenv("ERP_INCOMPLETE_BLUEPRINT_POLICY", INCOMPLETE_POLICY_FALLBACK).lower()
        if policy not in (INCOMPLETE_POLICY_FALLBACK, INCOMPLETE_POLICY_HALT):
            raise ValueError(
                f"ERP_INCOMPLETE_BLUEPRINT_POLICY must be 'fallback' or 'halt', got '{policy}'"
            )

        return cls(
            rounding_mode=RoundingMode(os.getenv("ROYALTY_ROUNDING_MODE", "half_up").lower()),
            decimal_places=int(os.getenv("ROYALTY_DECIMAL_PLACES", "2")),
            incomplete_blueprint_policy=policy,
            safety_tolerance=Decimal(os.getenv("ROYALTY_SAFETY_TOLERANCE", "1.01")),
            default_approach=CalculationApproach(
                os.getenv("DEFAULT_CALCULATION_APPROACH", "manual").lower()
            ),
        )
