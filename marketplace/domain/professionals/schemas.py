"""Professional domain schemas - Pydantic models for validation"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class ProfileUpdate(BaseModel):
    """Profile fields a professional may edit; entitlement fields are not accepted"""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    profession: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    hourlyRate: Optional[float] = None
    phone: Optional[str] = None
    imageUrl: Optional[str] = None
    description: Optional[str] = None

    @field_validator("hourlyRate")
    @classmethod
    def validate_hourly_rate(cls, v):
        if v is not None and v < 0:
            raise ValueError("hourlyRate must not be negative")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v:
            digits = re.sub(r"\D", "", v)
            if not 10 <= len(digits) <= 13:
                raise ValueError("phone must have 10 to 13 digits")
            return digits
        return v


class ProfileUpdateResponse(BaseModel):
    updated: list[str]
