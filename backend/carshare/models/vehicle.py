# backend/carshare/models/vehicle.py
"""Vehicle listing as seen by the booking engine (read-only)."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import VehicleStatus


class DepositPolicy(BaseModel):
    """Vehicle-specific security deposit; ``None`` falls back to the percentage rule."""

    model_config = ConfigDict(frozen=True)

    amount: Optional[int] = Field(default=None, ge=0)


class Vehicle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    daily_rate: int = Field(..., ge=0)
    deposit_policy: DepositPolicy = Field(default_factory=DepositPolicy)
    status: VehicleStatus = VehicleStatus.AVAILABLE
