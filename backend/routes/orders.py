"""
Public order tracking.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from deps import get_db
from domain.responses import success_response
from middleware.rate_limit import rate_limit
from models import TrackedOrderOut
from services import order_service

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/track", dependencies=[Depends(rate_limit(20, 60))])
async def track_orders(
    search_type: str = Query(..., alias="searchType"),
    value: str = Query(..., max_length=40),
    db: AsyncSession = Depends(get_db),
):
    """Look up recent orders by order number or delivery phone."""
    orders = await order_service.track_orders(db, search_type=search_type, value=value)
    return success_response(data=[TrackedOrderOut.model_validate(o).to_api() for o in orders])
