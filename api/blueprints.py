"""
API endpoints for calculation blueprints.

A blueprint binds a royalty rule's matching dimensions to confirmed ERP
field mappings so the rule can be evaluated directly against ERP data.
"""

from typing import List
import logging

from fastapi import APIRouter, HTTPException, Path, Request

from middleware.rate_limiter import limit_calculation
from models.royalty import CalculationBlueprint
from services.royalty.blueprint_materializer import MaterializationSummary
from services.royalty_engine import RoyaltyCalculationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/blueprints", tags=["Calculation Blueprints"])


@router.post("/contracts/{contract_id}/materialize", response_model=MaterializationSummary)
@limit_calculation
async def materialize_blueprints(
    request: Request,
    contract_id: int = Path(..., description="Contract ID")
):
    """
    Materialize blueprints for every active royalty rule of a contract.

    Rules whose blueprint content changed get a new version pointing at the
    previous one; unchanged rules keep their current blueprint.

    **Example Response:**
    ```json
    {
      "contract_id": 7,
      "blueprints_created": 2,
      "fully_mapped": 1,
      "partially_mapped": 1,
      "unchanged": 0,
      "blueprints": [...]
    }
    ```
    """
    try:
        return RoyaltyCalculationEngine().materialize_blueprints(contract_id)

    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Blueprint materialization failed for contract {contract_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Blueprint materialization failed: {str(e)}"
        )


@router.get("/contracts/{contract_id}", response_model=List[CalculationBlueprint])
async def get_blueprints(contract_id: int = Path(..., description="Contract ID")):
    """Latest active blueprint of each royalty rule of a contract."""
    try:
        return RoyaltyCalculationEngine().get_blueprints(contract_id)

    except Exception as e:
        logger.error(f"Failed to get blueprints for contract {contract_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to get blueprints: {str(e)}")
