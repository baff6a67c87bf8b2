"""One-time payment confirmation from the client checkout."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from coursegate.api.dependencies import get_current_user_id, get_entitlement_store, get_gateway, get_request_db_session
from coursegate.entitlements import EntitlementStore
from coursegate.platform.errors import get_correlation_id
from coursegate.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


class VerifyPaymentRequest(BaseModel):
    """Values returned to the browser by the Razorpay checkout widget."""
    order_id: str = Field(..., alias="razorpay_order_id")
    payment_id: str = Field(..., alias="razorpay_payment_id")
    signature: str = Field(..., alias="razorpay_signature")

    model_config = {"populate_by_name": True}


class VerifyPaymentResponse(BaseModel):
    payment_id: str
    subscription_id: Optional[str]
    subscription_status: Optional[str]
    already_processed: bool


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """
    Confirm a lifetime purchase. A webhook may have captured the order
    first; the response then reports already_processed.
    """
    service = PaymentService(db, gateway=gateway, entitlement_store=store, correlation_id=get_correlation_id(request))
    result = await service.verify_one_time_payment(user_id, body.order_id, body.payment_id, body.signature)
    return VerifyPaymentResponse(**result.to_dict())
