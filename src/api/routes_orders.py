from typing import List

from fastapi import APIRouter, Depends, status

from api.auth import get_current_caller, get_state, require_admin
from api.schemas import PlaceOrderIn, StatusUpdateIn
from db.models import Caller
from market.errors import ValidationError
from utils.state import AppState

router = APIRouter(prefix="/api/orders", tags=["orders"])


def _orders_out(orders) -> List[dict]:
    return [o.to_dict() for o in orders]


@router.post("", status_code=status.HTTP_201_CREATED)
async def place_order(
    payload: PlaceOrderIn,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    order = await state.orders.place_order(
        caller.id,
        [item.to_line() for item in payload.items],
        payload.payment_info.to_record() if payload.payment_info else None,
        payload.shipping_address.to_record() if payload.shipping_address else None,
    )
    return {"success": True, "message": "Order placed successfully", "order": order.to_dict()}


@router.get("/user")
async def list_my_orders(
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    orders = await state.orders.list_orders_for(caller)
    return {"success": True, "orders": _orders_out(orders)}


@router.get("")
async def list_all_orders(
    caller: Caller = Depends(require_admin),
    state: AppState = Depends(get_state),
):
    orders = await state.orders.list_all_orders(caller)
    return {"success": True, "orders": _orders_out(orders)}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    order = await state.orders.get_order(caller, order_id)
    return {"success": True, "order": order.to_dict()}


@router.patch("/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: StatusUpdateIn,
    caller: Caller = Depends(require_admin),
    state: AppState = Depends(get_state),
):
    if not payload.status:
        raise ValidationError("Order status is required.", "invalid_status")
    order = await state.orders.update_status(caller, order_id, payload.status)
    return {"success": True, "message": "Order status updated", "order": order.to_dict()}


@router.patch("/{order_id}/cancel")
@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    order = await state.orders.cancel_order(caller, order_id)
    return {"success": True, "message": "Order cancelled successfully", "order": order.to_dict()}


@router.delete("/{order_id}")
async def delete_order(
    order_id: str,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    await state.orders.delete_order(caller, order_id)
    return {"success": True, "message": "Order deleted successfully"}
