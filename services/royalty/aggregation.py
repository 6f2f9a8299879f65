"""
Aggregation of calculation line items along reporting dimensions.

Groups are formed in first-appearance order; no further sorting is applied.
Sums are exact Decimal sums, so the rows' total_fee always adds up to the
run total to the cent.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import io
import logging
import re

import numpy as np
import pandas as pd

from models.royalty import AggregationReport, AggregationRow, CalculationLineItem

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
UNKNOWN = "Unknown"
DIMENSION_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")

# Aliases resolved to the denormalized line item columns
DIMENSION_ALIASES = {
    "vendor": "vendor_name",
    "vendor_name": "vendor_name",
    "item": "item_name",
    "product": "item_name",
    "item_name": "item_name",
    "category": "item_class",
    "item_class": "item_class",
    "territory": "territory",
    "period": "period",
    "rule_name": "rule_name",
    "rule": "rule_name",
}

STANDARD_DIMENSIONS = [
    {"dimension_key": "summary", "display_name": "Summary", "dimension_type": "summary", "is_groupable": False},
    {"dimension_key": "detail", "display_name": "Detail", "dimension_type": "detail", "is_groupable": False},
    {"dimension_key": "item_name", "display_name": "By Item", "dimension_type": "product", "is_groupable": True},
    {"dimension_key": "vendor_name", "display_name": "By Vendor", "dimension_type": "vendor", "is_groupable": True},
    {"dimension_key": "item_class", "display_name": "By Category", "dimension_type": "category", "is_groupable": True},
    {"dimension_key": "territory", "display_name": "By Territory", "dimension_type": "territory", "is_groupable": True},
    {"dimension_key": "period", "display_name": "By Period", "dimension_type": "period", "is_groupable": True},
    {"dimension_key": "rule_name", "display_name": "By Rule", "dimension_type": "rule", "is_groupable": True},
]


def convert_numpy_types(obj):
    """
    Convert numpy/pandas scalars to native Python types for JSON serialization.

    Args:
        obj: Object that may contain numpy types

    Returns:
        Object with all numpy types converted to native Python types
    """
    if isinstance(obj, dict):
        return {key: convert_numpy_types(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [convert_numpy_types(item) for item in obj]
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    else:
        return obj


def dimension_value(item: CalculationLineItem, dimension_key: str) -> str:
    """
    Value of a line item along a dimension.

    Standard keys read the denormalized columns; anything else is looked up
    in the item's dimensions map. Missing values group as 'Unknown'.

    Raises:
        ValueError: If a custom key contains characters outside [A-Za-z0-9_]
    """
    column = DIMENSION_ALIASES.get(dimension_key)
    if column is not None:
        value = getattr(item, column)
    else:
        if not DIMENSION_KEY_PATTERN.match(dimension_key):
            raise ValueError(f"Invalid dimension key: '{dimension_key}'")
        value = item.dimensions.get(dimension_key)

    if value is None or (isinstance(value, str) and not value.strip()):
        return UNKNOWN
    return str(value)


class AggregationReporter:
    """
    Groups line items by a dimension for reporting.

    Usage:
        reporter = AggregationReporter()
        report = reporter.aggregate(line_items, "territory", calculation_id=42)
    """

    def _row(self, value: str, items: Sequence[CalculationLineItem], grand_total: Decimal) -> AggregationRow:
        total_fee = sum((i.calculated_fee for i in items), ZERO)
        total_sales = sum((i.gross_amount for i in items), ZERO)
        total_quantity = sum((i.quantity for i in items), ZERO)

        percent = ZERO
        if grand_total != 0:
            percent = (total_fee / grand_total * 100).quantize(CENT)
        average_rate = ZERO
        if total_sales != 0:
            average_rate = (total_fee / total_sales * 100).quantize(Decimal("0.0001"))

        return AggregationRow(
            dimension_value=value,
            transaction_count=sum(1 for i in items if not i.is_adjustment),
            total_quantity=total_quantity,
            total_sales_amount=total_sales,
            total_fee=total_fee,
            average_rate=average_rate,
            percent_of_total=percent,
        )

    def aggregate(
        self,
        line_items: Sequence[CalculationLineItem],
        dimension_key: str,
        calculation_id: Optional[int] = None
    ) -> AggregationReport:
        """
        Aggregate line items along one dimension.

        Args:
            line_items: The run's persisted line items
            dimension_key: Standard key or custom dimension key
            calculation_id: Run the items belong to

        Returns:
            AggregationReport with rows and a totals row
        """
        groups: Dict[str, List[CalculationLineItem]] = {}
        for item in line_items:
            groups.setdefault(dimension_value(item, dimension_key), []).append(item)

        grand_total = sum((i.calculated_fee for i in line_items), ZERO)
        rows = [self._row(value, items, grand_total) for value, items in groups.items()]
        totals = self._row("Total", list(line_items), grand_total)

        logger.info(
            f"Aggregated {len(line_items)} line items by '{dimension_key}' "
            f"into {len(rows)} groups (total fee {grand_total})"
        )

        return AggregationReport(
            calculation_id=calculation_id,
            dimension_key=dimension_key,
            rows=rows,
            totals=totals,
        )

    def summary(
        self,
        line_items: Sequence[CalculationLineItem],
        calculation_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Summary report: totals, status counts, and breakdowns by rule and by category."""
        statuses = pd.Series(
            [item.status.value for item in line_items if not item.is_adjustment], dtype="object"
        )
        counts = convert_numpy_types(statuses.value_counts(sort=False).to_dict())

        by_rule = self.aggregate(line_items, "rule_name", calculation_id)
        by_category = self.aggregate(line_items, "item_class", calculation_id)

        return {
            "calculation_id": calculation_id,
            "totals": by_rule.totals,
            "status_counts": counts,
            "by_rule": by_rule.rows,
            "by_item_class": by_category.rows,
        }

    def to_dataframe(self, report: AggregationReport, include_totals: bool = True) -> pd.DataFrame:
        """Tabular view of a report; Decimal columns are kept as Decimal objects."""
        rows = list(report.rows) + ([report.totals] if include_totals else [])
        columns = list(AggregationRow.model_fields)
        df = pd.DataFrame([row.model_dump() for row in rows], columns=columns)
        return df.rename(columns={"dimension_value": report.dimension_key})

    def to_csv(self, report: AggregationReport) -> str:
        """CSV export of a report including the totals row."""
        buffer = io.StringIO()
        self.to_dataframe(report).to_csv(buffer, index=False)
        return buffer.getvalue()
