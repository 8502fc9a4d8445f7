"""
Transaction Routes
===================
Order history for the logged-in customer, and cancel / reorder actions.
"""

from fastapi import APIRouter, Request, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from common.exceptions import ValidationError
from common.security import csrf_check, check_origin, enforce_request_size, rate_limit
from modules.auth.deps import require_login
from modules.transaction.service import (
    transaction_service, parse_transaction_query, parse_action_body,
)

router = APIRouter(prefix="/api/transactions", tags=["transactions"])

QUERY_KEYS = ("page", "limit", "period", "status", "search", "sortBy", "sortOrder", "includeItems")


@router.get("", dependencies=[Depends(rate_limit("transactions"))])
async def list_transactions(
    request: Request,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_login),
):
    check_origin(request)
    q = parse_transaction_query({k: request.query_params.get(k) for k in QUERY_KEYS})
    page = await transaction_service.list_transactions(db, user.id, q)
    return {"success": True, "data": transaction_service.build_response(page, q)}


@router.post("", dependencies=[Depends(rate_limit("general"))])
async def transaction_action(
    request: Request,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_login),
):
    await enforce_request_size(request)
    check_origin(request)
    csrf_check(request)

    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")

    order_id, action = parse_action_body(body)

    if action == "cancel":
        await transaction_service.cancel_order(db, user.id, order_id)
        return {"success": True, "message": "Pesanan berhasil dibatalkan"}

    items = await transaction_service.reorder_items(db, user.id, order_id)
    return {
        "success": True,
        "message": "Redirecting to checkout",
        "data": {"action": "reorder", "items": items},
    }
