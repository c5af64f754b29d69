from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SquareObject(BaseModel):
    # Square adds fields over time; keep whatever arrives.
    model_config = ConfigDict(extra="allow")


class Money(SquareObject):
    amount: Optional[int] = None
    currency: Optional[str] = None


class Address(SquareObject):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None

    @property
    def full_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


class Buyer(SquareObject):
    email_address: Optional[str] = None
    phone_number: Optional[str] = None


class SquarePayment(SquareObject):
    id: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None
    amount_money: Optional[Money] = None
    tip_money: Optional[Money] = None
    total_money: Optional[Money] = None
    buyer_email_address: Optional[str] = None
    receipt_email: Optional[str] = None
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    buyer: Optional[Buyer] = None


class SquareRefund(SquareObject):
    id: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None
    amount_money: Optional[Money] = None


class OrderStateChange(SquareObject):
    order_id: Optional[str] = None
    state: Optional[str] = None
    version: Optional[int] = None


class FulfillmentUpdate(SquareObject):
    fulfillment_uid: Optional[str] = None
    old_state: Optional[str] = None
    new_state: Optional[str] = None


class OrderFulfillmentUpdated(OrderStateChange):
    fulfillment_update: List[FulfillmentUpdate] = Field(default_factory=list)


class WebhookData(BaseModel):
    type: str
    id: str
    object: Dict[str, Any] = Field(default_factory=dict)


class WebhookPayload(BaseModel):
    """Envelope of every Square webhook delivery."""

    merchant_id: str
    type: str
    event_id: str
    created_at: str
    data: WebhookData

    @field_validator("event_id", "type")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    def order_state_change(self, key: str) -> OrderStateChange:
        return OrderStateChange.model_validate(self.data.object.get(key) or {})

    def fulfillment_change(self) -> OrderFulfillmentUpdated:
        return OrderFulfillmentUpdated.model_validate(self.data.object.get("order_fulfillment_updated") or {})

    def payment(self) -> SquarePayment:
        return SquarePayment.model_validate(self.data.object.get("payment") or {})

    def refund(self) -> SquareRefund:
        return SquareRefund.model_validate(self.data.object.get("refund") or {})
