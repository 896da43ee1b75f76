from pydantic import BaseModel, Field
from typing import List


class CartCheckoutRequest(BaseModel):
    """Schema for starting a PayPal checkout for one or more courses"""
    course_ids: List[int] = Field(..., min_length=1, description="Courses in the cart")


class CheckoutResponse(BaseModel):
    order_id: str
    approval_url: str
    purchase_ids: List[int] = []
