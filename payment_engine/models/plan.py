"""
payment_engine/models/plan.py

Plan model for prepaid metering tiers.

Plans are defined by the escrow program and mirrored client-side. The mirror
must match the program's id, price and request allowance exactly.
"""

from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field


class Plan(BaseModel):
    """
    Plan represents a purchasable tier.

    Examples:
    - Basic (10 tokens, 20 requests)
    - Standard (20 tokens, 50 requests)
    - Premium (50 tokens, 100 requests)
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(gt=0)
    name: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    request_allowance: int = Field(gt=0)
    description: str = ""
