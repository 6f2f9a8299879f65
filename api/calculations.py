"""
API endpoints for royalty calculation runs.

Provides REST interface for running calculations, reading line items and
aggregation reports, and moving runs through the approval workflow.
"""

from datetime import date
from typing import Any, Dict, List, Literal, Optional
import logging

from fastapi import APIRouter, HTTPException, Path, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from middleware.rate_limiter import limit_approval, limit_calculation, limit_default, limit_export
from models.royalty import AggregationReport, CalculationLineItem, CalculationRun
from services.royalty.aggregation import STANDARD_DIMENSIONS
from services.royalty.errors import (
    CalculationNotFoundError,
    CalculationRunError,
    InvalidStatusTransitionError,
)
from services.royalty_engine import CalculationApprovalService, RoyaltyCalculationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calculations", tags=["Royalty Calculations"])


# Request/Response Models

class RunCalculationRequest(BaseModel):
    """Request body for POST /api/calculations/run"""
    contract_id: int = Field(..., description="Contract ID to calculate")
    period_start: date = Field(..., description="First day of the period (inclusive)")
    period_end: date = Field(..., description="Last day of the period (inclusive)")
    dry_run: bool = Field(False, description="Compute without persisting")


class ApproveRequest(BaseModel):
    approver_id: str = Field(..., min_length=1, description="User approving the run")


class RejectRequest(BaseModel):
    approver_id: str = Field(..., min_length=1, description="User rejecting the run")
    reason: str = Field(..., min_length=1, description="Why the run was rejected")


class MarkPaidRequest(BaseModel):
    actor_id: Optional[str] = Field(None, description="User recording the payment")


class DimensionConfig(BaseModel):
    dimension_key: str
    display_name: str
    dimension_type: str
    is_groupable: bool


def _not_found(e: CalculationNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


# Endpoints

@router.post("/run", response_model=CalculationRun)
@limit_calculation
async def run_calculation(request: Request, body: RunCalculationRequest):
    """
    Run a royalty calculation for a contract period.

    1. Load the contract and its active royalty rules
    2. Select the matching rule for every sales transaction in the period
    3. Apply tiers, formulas, multipliers, bonuses, caps and deductions
    4. Enforce the minimum guarantee for the period
    5. Persist the run and its line items as pending_approval

    A run that cannot start (missing contract, no active rules, invalid
    rule) is returned with status 'failed' and an error_message.

    **Example Request:**
    ```json
    {
      "contract_id": 7,
      "period_start": "2024-01-01",
      "period_end": "2024-03-31",
      "dry_run": false
    }
    ```
    """
    try:
        if body.period_end < body.period_start:
            raise HTTPException(
                status_code=400,
                detail="period_start must not be after period_end"
            )

        engine = RoyaltyCalculationEngine()

        return engine.run_calculation(
            contract_id=body.contract_id,
            period_start=body.period_start,
            period_end=body.period_end,
            dry_run=body.dry_run
        )

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CalculationRunError as e:
        logger.error(f"Royalty calculation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.error(f"Royalty calculation failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Royalty calculation failed: {str(e)}"
        )


@router.get("/dimensions", response_model=List[DimensionConfig])
async def get_dimensions():
    """Standard report dimensions available for aggregation."""
    return STANDARD_DIMENSIONS


@router.get("/{calculation_id}", response_model=CalculationRun)
@limit_default
async def get_calculation(
    request: Request,
    calculation_id: int = Path(..., description="Calculation run ID")
):
    """Get a calculation run with its totals, breakdown and approval status."""
    try:
        return RoyaltyCalculationEngine().get_calculation(calculation_id)

    except CalculationNotFoundError as e:
        raise _not_found(e)
    except Exception as e:
        logger.error(f"Failed to get calculation {calculation_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to get calculation: {str(e)}")


@router.get("/{calculation_id}/line-items", response_model=List[CalculationLineItem])
@limit_default
async def get_line_items(
    request: Request,
    calculation_id: int = Path(..., description="Calculation run ID")
):
    """
    Get the line items of a calculation run.

    One item per sales transaction, plus a minimum guarantee adjustment item
    when a shortfall was applied. Fees sum to the run's total_fee.
    """
    try:
        return RoyaltyCalculationEngine().get_line_items(calculation_id)

    except CalculationNotFoundError as e:
        raise _not_found(e)
    except Exception as e:
        logger.error(f"Failed to get line items for {calculation_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to get line items: {str(e)}")


@router.get("/{calculation_id}/aggregate", response_model=AggregationReport)
@limit_export
async def get_aggregate(
    request: Request,
    calculation_id: int = Path(..., description="Calculation run ID"),
    dimension: str = Query(..., description="Dimension key, e.g. territory, item_class, period"),
    format: Literal["json", "csv"] = Query("json", description="Response format")
):
    """
    Aggregate a run's line items along one dimension.

    **Example:**
    ```
    GET /api/calculations/42/aggregate?dimension=territory
    GET /api/calculations/42/aggregate?dimension=item_class&format=csv
    ```
    """
    try:
        engine = RoyaltyCalculationEngine()
        report = engine.get_aggregate(calculation_id, dimension)

        if format == "csv":
            return Response(
                content=engine.reporter.to_csv(report),
                media_type="text/csv",
                headers={
                    "Content-Disposition": (
                        f'attachment; filename="calculation_{calculation_id}_{dimension}.csv"'
                    )
                },
            )
        return report

    except CalculationNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to aggregate calculation {calculation_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to aggregate calculation: {str(e)}")


@router.get("/{calculation_id}/summary", response_model=Dict[str, Any])
@limit_default
async def get_summary(
    request: Request,
    calculation_id: int = Path(..., description="Calculation run ID")
):
    """Summary report: totals, status counts, and breakdowns by rule and by category."""
    try:
        return RoyaltyCalculationEngine().get_summary(calculation_id)

    except CalculationNotFoundError as e:
        raise _not_found(e)
    except Exception as e:
        logger.error(f"Failed to summarize calculation {calculation_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to summarize calculation: {str(e)}")


@router.post("/{calculation_id}/approve", response_model=CalculationRun)
@limit_approval
async def approve_calculation(
    request: Request,
    body: ApproveRequest,
    calculation_id: int = Path(..., description="Calculation run ID")
):
    """Approve a run awaiting approval (pending_approval -> approved)."""
    try:
        return CalculationApprovalService().approve(calculation_id, body.approver_id)

    except CalculationNotFoundError as e:
        raise _not_found(e)
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to approve calculation {calculation_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to approve calculation: {str(e)}")


@router.post("/{calculation_id}/reject", response_model=CalculationRun)
@limit_approval
async def reject_calculation(
    request: Request,
    body: RejectRequest,
    calculation_id: int = Path(..., description="Calculation run ID")
):
    """Reject a run awaiting approval (pending_approval -> rejected)."""
    try:
        return CalculationApprovalService().reject(calculation_id, body.approver_id, body.reason)

    except CalculationNotFoundError as e:
        raise _not_found(e)
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to reject calculation {calculation_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to reject calculation: {str(e)}")


@router.post("/{calculation_id}/paid", response_model=CalculationRun)
@limit_approval
async def mark_calculation_paid(
    request: Request,
    body: MarkPaidRequest,
    calculation_id: int = Path(..., description="Calculation run ID")
):
    """Record payment of an approved run (approved -> paid)."""
    try:
        return CalculationApprovalService().mark_paid(calculation_id, body.actor_id)

    except CalculationNotFoundError as e:
        raise _not_found(e)
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to mark calculation {calculation_id} paid: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to mark calculation paid: {str(e)}")
