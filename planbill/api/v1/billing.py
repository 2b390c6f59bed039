"""Billing API endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, NonNegativeFloat, NonNegativeInt

from planbill.auth import AuthenticatedClient
from planbill.payments import Payments

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class SubscribeRequest(BaseModel):
    """Subscription change request."""

    email: str
    plan_name: str = Field(description="Plan to subscribe to")
    line_item_counts: dict[str, Any] | None = Field(
        default=None, description="Purchased quantity per capacity line item"
    )
    existing_line_item_counts: dict[str, Any] | None = Field(
        default=None, description="Currently consumed resources per line item"
    )
    success_url: str | None = None
    cancel_url: str | None = None


class UnsubscribeRequest(BaseModel):
    email: str
    existing_line_item_counts: dict[str, Any] | None = None


class PaymentMethodSessionRequest(BaseModel):
    email: str
    success_url: str | None = None
    cancel_url: str | None = None


class PaymentMethodRequest(BaseModel):
    email: str
    payment_method_id: str


class UsageRecordRequest(BaseModel):
    email: str
    line_item_name: str
    quantity: NonNegativeInt | NonNegativeFloat
    log10_scale: int = Field(default=0, ge=-10, le=0)
    log2_scale: int = Field(default=0, ge=-10, le=0)


def _get_payments(request: Request) -> Payments:
    payments = getattr(request.app.state, "payments", None)
    if payments is None:
        raise HTTPException(status_code=503, detail="Billing is not configured")
    return payments


@router.get("/customers")
async def find_customer(request: Request, _client: AuthenticatedClient, email: str = Query()) -> dict:
    return await _get_payments(request).customers.find(email)


@router.post("/customers/subscribe")
async def subscribe(body: SubscribeRequest, request: Request, _client: AuthenticatedClient) -> dict:
    """Subscribe a customer to a plan, or change their line item counts."""
    result = await _get_payments(request).customers.subscribe(
        body.email,
        body.plan_name,
        body.line_item_counts,
        body.existing_line_item_counts,
        body.success_url,
        body.cancel_url,
    )
    logger.info("billing_subscribe_completed", plan=body.plan_name)
    return result


@router.post("/customers/unsubscribe")
async def unsubscribe(body: UnsubscribeRequest, request: Request, _client: AuthenticatedClient) -> dict:
    canceled = await _get_payments(request).customers.unsubscribe(body.email, body.existing_line_item_counts)
    return {"canceled": canceled}


@router.get("/plans")
async def list_plans(request: Request, _client: AuthenticatedClient) -> list[dict]:
    return await _get_payments(request).plans.list()


@router.get("/plans/current")
async def current_plan(request: Request, _client: AuthenticatedClient, email: str = Query()) -> dict:
    return await _get_payments(request).plans.current(email)


@router.get("/plans/status")
async def billing_status(request: Request, _client: AuthenticatedClient, email: str = Query()) -> dict:
    return await _get_payments(request).plans.billing_status(email)


@router.post("/payment-methods")
async def create_payment_method(
    body: PaymentMethodSessionRequest, request: Request, _client: AuthenticatedClient
) -> dict:
    """Start a checkout session that adds a payment method."""
    return await _get_payments(request).payment_methods.create(body.email, body.success_url, body.cancel_url)


@router.get("/payment-methods")
async def list_payment_methods(request: Request, _client: AuthenticatedClient, email: str = Query()) -> list[dict]:
    return await _get_payments(request).payment_methods.list(email)


@router.post("/payment-methods/default")
async def set_default_payment_method(
    body: PaymentMethodRequest, request: Request, _client: AuthenticatedClient
) -> dict:
    return await _get_payments(request).payment_methods.set_default(body.email, body.payment_method_id)


@router.post("/payment-methods/remove")
async def remove_payment_method(
    body: PaymentMethodRequest, request: Request, _client: AuthenticatedClient
) -> list[dict]:
    return await _get_payments(request).payment_methods.remove(body.email, body.payment_method_id)


@router.get("/invoices")
async def list_invoices(
    request: Request,
    _client: AuthenticatedClient,
    email: str = Query(),
    count: int = Query(default=10),
) -> list[dict]:
    return await _get_payments(request).invoices.list(email, count)


@router.get("/invoices/upcoming")
async def upcoming_invoice(request: Request, _client: AuthenticatedClient, email: str = Query()) -> dict | None:
    return await _get_payments(request).invoices.upcoming(email)


@router.post("/usage-records")
async def create_usage_record(body: UsageRecordRequest, request: Request, _client: AuthenticatedClient) -> dict:
    """Record metered usage for a usage line item."""
    result = await _get_payments(request).usage_records.create(
        body.email, body.line_item_name, body.quantity, body.log10_scale, body.log2_scale
    )
    return result.model_dump(by_alias=True)
