"""
Line item generation.

Turns a (transaction, matched rule(s), computed fee) triple into an immutable
CalculationLineItem with the dimension map the aggregation layer groups on.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from models.royalty import (
    CalculationLineItem,
    LineItemStatus,
    MinimumGuaranteeShortfall,
    SalesTransaction,
)
from services.royalty.erp_mapping_executor import ErpExecutionResult
from services.royalty.fee_calculator import FeeResult

ZERO_FEE = Decimal("0.00")


def period_key(value: Optional[date]) -> Optional[str]:
    return value.strftime("%Y-%m") if value else None


class LineItemGenerator:
    """
    Builds CalculationLineItems.

    Args:
        custom_dimension_fields: Custom/ERP field names copied from the
            transaction into each item's dimensions map
    """

    def __init__(self, custom_dimension_fields: Sequence[str] = ()):
        self.custom_dimension_fields = list(custom_dimension_fields)

    def dimensions_for(self, transaction: SalesTransaction, rule_name: Optional[str]) -> Dict[str, Any]:
        """Dimension map with standard keys plus their aliases."""
        dimensions: Dict[str, Any] = {
            "item_name": transaction.product_name,
            "product": transaction.product_name,
            "vendor_name": transaction.vendor,
            "vendor": transaction.vendor,
            "territory": transaction.territory,
            "region": transaction.territory,
            "item_class": transaction.category,
            "category": transaction.category,
            "container_size": transaction.container_size,
            "period": period_key(transaction.transaction_date),
            "rule_name": rule_name,
        }
        fields = self.custom_dimension_fields or list(transaction.custom_fields)
        for name in fields:
            value = transaction.get_field(name)
            if value is not None:
                dimensions.setdefault(name, value if isinstance(value, (str, int, float, bool)) else str(value))
        return dimensions

    def _base(self, transaction: SalesTransaction, calculation_id: Optional[int], rule_name: Optional[str]) -> Dict[str, Any]:
        return {
            "calculation_id": calculation_id,
            "sales_id": transaction.id,
            "transaction_date": transaction.transaction_date,
            "quantity": transaction.quantity,
            "gross_amount": transaction.gross_amount,
            "vendor_name": transaction.vendor,
            "item_name": transaction.product_name,
            "item_class": transaction.category,
            "territory": transaction.territory,
            "period": period_key(transaction.transaction_date),
            "dimensions": self.dimensions_for(transaction, rule_name),
        }

    def matched(
        self,
        transaction: SalesTransaction,
        result: FeeResult,
        calculation_id: Optional[int] = None
    ) -> CalculationLineItem:
        rule = result.rule
        rule_name = rule.rule_name if rule else "Additive rules"
        return CalculationLineItem(
            **self._base(transaction, calculation_id, rule_name),
            calculated_fee=result.fee,
            applied_rate=result.applied_rate,
            rule_id=rule.id if rule else None,
            rule_name=rule_name,
            rule_type=rule.rule_type.value if rule else None,
            tier_applied=result.tier_applied,
            blueprint_id=result.blueprint_id,
            status=LineItemStatus.MATCHED,
            calculation_steps=result.calculation_steps,
            conditions_checked=result.conditions_checked,
        )

    def from_erp(
        self,
        transaction: SalesTransaction,
        result: ErpExecutionResult,
        fee: Decimal,
        rule_set_name: str,
        calculation_id: Optional[int] = None
    ) -> CalculationLineItem:
        return CalculationLineItem(
            **self._base(transaction, calculation_id, rule_set_name),
            calculated_fee=fee,
            applied_rate=result.applied_rate,
            rule_name=rule_set_name,
            rule_type="erp_mapping",
            tier_applied=result.tier_applied,
            status=LineItemStatus.MATCHED,
            calculation_steps=result.calculation_steps,
            conditions_checked=result.conditions_checked,
        )

    def unmatched(
        self,
        transaction: SalesTransaction,
        conditions_checked: List[Dict[str, Any]],
        calculation_id: Optional[int] = None
    ) -> CalculationLineItem:
        return CalculationLineItem(
            **self._base(transaction, calculation_id, None),
            calculated_fee=ZERO_FEE,
            status=LineItemStatus.UNMATCHED,
            conditions_checked=conditions_checked,
        )

    def failed(
        self,
        transaction: SalesTransaction,
        error_message: str,
        rule_name: Optional[str] = None,
        conditions_checked: Optional[List[Dict[str, Any]]] = None,
        calculation_id: Optional[int] = None
    ) -> CalculationLineItem:
        return CalculationLineItem(
            **self._base(transaction, calculation_id, rule_name),
            calculated_fee=ZERO_FEE,
            rule_name=rule_name,
            status=LineItemStatus.FAILED,
            error_message=error_message,
            conditions_checked=conditions_checked or [],
        )

    def minimum_guarantee_adjustment(
        self,
        shortfall: MinimumGuaranteeShortfall,
        period_end: date,
        rule_name: str,
        calculation_id: Optional[int] = None
    ) -> CalculationLineItem:
        """Period-level top-up carrying a minimum guarantee shortfall (and true-up)."""
        amount = shortfall.shortfall + shortfall.true_up_amount
        return CalculationLineItem(
            calculation_id=calculation_id,
            transaction_date=period_end,
            calculated_fee=amount,
            rule_id=shortfall.rule_id,
            rule_name=rule_name,
            rule_type="minimum_guarantee",
            tier_applied=None,
            status=LineItemStatus.MATCHED,
            is_adjustment=True,
            period=period_key(period_end),
            dimensions={"rule_name": rule_name, "period": period_key(period_end)},
            calculation_steps=[{
                "step": "minimum_guarantee",
                "period": shortfall.period_label,
                "calculated_total": str(shortfall.calculated_total),
                "minimum": str(shortfall.minimum),
                "shortfall": str(shortfall.shortfall),
                "true_up": str(shortfall.true_up_amount),
            }],
        )
