"""Notification schemas"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator

from inventory_backend.models.notification import NotificationType
from inventory_backend.models.user import Role


class LowStockPayload(BaseModel):
    product_name: str
    quantity: int
    warehouse_id: str
    warehouse_name: Optional[str] = None


class OrderStatusPayload(BaseModel):
    order_number: str
    status: str
    supplier_name: Optional[str] = None


_PAYLOAD_MODELS = {
    NotificationType.LOW_STOCK: LowStockPayload,
    NotificationType.ORDER_STATUS: OrderStatusPayload,
}


class NotificationCreate(BaseModel):
    """A notification addressed to one recipient.

    LOW_STOCK and ORDER_STATUS carry a typed payload; SYSTEM and TASK accept
    an arbitrary key-value map.
    """
    type: NotificationType
    message: str = Field(..., min_length=1, max_length=2000)
    recipient_id: Optional[str] = None
    order_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_payload(self):
        model = _PAYLOAD_MODELS.get(self.type)
        if model is not None and self.payload is not None:
            self.payload = model.model_validate(self.payload).model_dump()
        return self

    def typed_payload(self) -> Optional[Union[LowStockPayload, OrderStatusPayload, Dict[str, Any]]]:
        model = _PAYLOAD_MODELS.get(self.type)
        if model is None or self.payload is None:
            return self.payload
        return model.model_validate(self.payload)


class BroadcastRequest(BaseModel):
    type: NotificationType = NotificationType.SYSTEM
    message: str = Field(..., min_length=1, max_length=2000)
    order_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    roles: Optional[List[Role]] = None

    @model_validator(mode="after")
    def _check_payload(self):
        model = _PAYLOAD_MODELS.get(self.type)
        if model is not None and self.payload is not None:
            self.payload = model.model_validate(self.payload).model_dump()
        return self


class NotificationResponse(BaseModel):
    id: str
    type: NotificationType
    message: str
    recipient_id: str
    order_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    seen: bool
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationPage(BaseModel):
    notifications: List[NotificationResponse]
    count: int
    pages: int
    current_page: int


class BroadcastResult(BaseModel):
    delivered: int
    failed: List[str] = Field(default_factory=list)
