"""Customer-facing billing models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UsageRemainder(BaseModel):
    """Unbilled usage carried at a fixed decimal/binary scale."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # Same amount expressed in whole units (display only)
    decimal: float = 0.0
    quantity: int = 0
    log10_scale: int = Field(default=0, alias="log10Scale")
    log2_scale: int = Field(default=0, alias="log2Scale")


class UsageRecord(BaseModel):
    """Billable units plus the fractional remainder left over."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    units: int = 0
    remainder: UsageRemainder = Field(default_factory=UsageRemainder)


class UsageState(BaseModel):
    """Accumulator state persisted between recordings of one line item."""

    model_config = ConfigDict(populate_by_name=True)

    # Epoch milliseconds of the last recording
    time: int = 0
    remainder: UsageRemainder = Field(default_factory=UsageRemainder)


class UsageRecordResult(BaseModel):
    """Outcome of a usage recording."""

    new_record: UsageRecord
    rollover_record: UsageRecord
    merged_record: UsageRecord
    stripe_data: dict[str, Any] = Field(default_factory=dict)


class BillingStatus(BaseModel):
    """Billing state of a customer's current subscription."""

    is_billable: bool = False
    is_incomplete: bool = False
    is_past_due: bool = False
    invoice_url: str | None = None


class CheckoutSession(BaseModel):
    """Hosted checkout session handed back to the frontend."""

    stripe_checkout_session_id: str
