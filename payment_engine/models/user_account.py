"""
payment_engine/models/user_account.py

Per-owner subscription account kept by the escrow program.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict

from payment_engine.models.plan import Plan


class UserAccount(BaseModel):
    """
    Aggregated request allowance and purchase history for one owner.

    Constraint: the active plan is the most recently appended entry of
    `subscribed_plans`, not the most expensive one.
    """
    model_config = ConfigDict(frozen=True)

    address: str
    owner: str
    total_requests_granted: int
    subscribed_plans: List[Plan] = []

    @property
    def active_plan(self) -> Optional[Plan]:
        if not self.subscribed_plans:
            return None
        return self.subscribed_plans[-1]
