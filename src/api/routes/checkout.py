"""Checkout and order API routes."""

from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from src.api.deps import CheckoutRateLimit, CheckoutServiceDep, CurrentUser, OrderServiceDep
from src.api.middleware.error_handler import AuthorizationError, OrderNotFoundError
from src.schemas.auth import UserContext
from src.schemas.checkout import (
    CheckoutResumeRequest,
    CheckoutResumeResponse,
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    LicenseResponse,
    OrderItemResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusResponse,
)
from src.services.order_service import OrderService

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "/session",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_200_OK,
    summary="Create Stripe Checkout Session",
    description="Prices the cart server-side and returns a Stripe Checkout URL, reusing an open session for the same cart.",
    responses={
        400: {"description": "Invalid cart or request"},
        401: {"description": "Authentication required"},
        404: {"description": "Unknown product or variant"},
        409: {"description": "A checkout for this cart is already in progress"},
        429: {"description": "Rate limited"},
    },
)
async def create_checkout_session(
    data: CheckoutSessionCreate,
    user: CurrentUser,
    _: CheckoutRateLimit,
    service: CheckoutServiceDep,
) -> CheckoutSessionResponse:
    """Create (or reuse) a Stripe Checkout Session for the caller's cart.

    Args:
        data: Cart lines, optional email/locale and shipping address.
        user: Authenticated caller.
        service: Checkout orchestrator.

    Returns:
        CheckoutSessionResponse: Contains session_url for redirect.
    """
    result = await service.create_checkout_session(user, data)
    return CheckoutSessionResponse(
        session_url=result.session_url,
        order_id=UUID(result.order_id),
        reused=result.reused,
    )


@router.post(
    "/resume",
    response_model=CheckoutResumeResponse,
    summary="Resume an open checkout",
    description="Returns the still-payable session URL for this cart, or 409 with should_retry when none exists.",
)
async def resume_checkout_session(
    data: CheckoutResumeRequest,
    user: CurrentUser,
    _: CheckoutRateLimit,
    service: CheckoutServiceDep,
) -> CheckoutResumeResponse | JSONResponse:
    result = await service.resume_checkout_session(user, data.items)
    if result is None:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=CheckoutResumeResponse(should_retry=True).model_dump(),
        )
    return CheckoutResumeResponse(session_url=result.session_url)


# Orders router - mounted separately at /orders
orders_router = APIRouter(prefix="/orders", tags=["orders"])


def _ensure_owner(order: dict, user: UserContext) -> None:
    if order.get("user_id") != str(user.user_id):
        raise AuthorizationError("You do not have access to this order")


@orders_router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
    description="Returns the authenticated user's orders, newest first.",
)
async def list_orders(user: CurrentUser, orders: OrderServiceDep) -> OrderListResponse:
    rows = await orders.list_for_user(str(user.user_id))
    return OrderListResponse(items=[OrderResponse.model_validate(row) for row in rows])


@orders_router.get(
    "/status",
    response_model=OrderStatusResponse,
    summary="Order status by checkout session",
    description="Polled by the checkout success page until the webhook marks the order paid.",
)
async def get_order_status(
    user: CurrentUser,
    orders: OrderServiceDep,
    session_id: str = Query(min_length=1, max_length=255, description="Stripe Checkout Session ID"),
) -> OrderStatusResponse:
    """Get the status of the order paid by a checkout session.

    Raises:
        OrderNotFoundError: 404 if no order has this session.
        AuthorizationError: 403 if the order belongs to another user.
    """
    order = await orders.get_order_by_session_id(session_id)
    if not order:
        raise OrderNotFoundError()
    _ensure_owner(order, user)
    return OrderStatusResponse(
        order_id=order["id"],
        reference=order["reference"],
        status=order["status"],
        total_amount=order["total_amount"],
        currency=order["currency"],
    )


@orders_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    description="Returns one order with its items and active license keys. Only accessible by the order owner.",
)
async def get_order(order_id: UUID, user: CurrentUser, orders: OrderServiceDep) -> OrderResponse:
    """Get a single order by ID.

    Args:
        order_id: The order's UUID.
        user: Authenticated caller.
        orders: Order store.

    Returns:
        OrderResponse: The order, its items and non-revoked licenses.

    Raises:
        OrderNotFoundError: 404 if order not found.
        AuthorizationError: 403 if not authorized to view this order.
    """
    order = await orders.get_order(str(order_id))
    if not order:
        raise OrderNotFoundError()
    _ensure_owner(order, user)
    return await _order_with_details(orders, order)


async def _order_with_details(orders: OrderService, order: dict) -> OrderResponse:
    items = await orders.get_items(order["id"])
    licenses = await orders.get_active_licenses(order["id"]) if order["status"] == "paid" else []
    response = OrderResponse.model_validate(order)
    response.items = [OrderItemResponse.model_validate(item) for item in items]
    response.licenses = [LicenseResponse.model_validate(lic) for lic in licenses]
    return response
