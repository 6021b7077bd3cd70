from __future__ import annotations

from typing import List, Optional

from pydantic import EmailStr, Field, field_validator

from medtriage.schemas.prediction import CamelModel, Gender


class ContactInfo(CamelModel):
    email: Optional[EmailStr] = Field(None, description="Patient's email address")
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9][0-9 ()-]{6,19}$", description="Patient's phone number")


class PatientRequest(CamelModel):
    """Body of ``POST /patients`` and ``PUT /patients/{id}``."""

    name: str = Field(..., max_length=100, description="Patient's full name")
    age: int = Field(..., ge=0, le=120)
    gender: Gender
    weight: Optional[float] = Field(None, gt=0, le=500, description="Weight in kg.")
    contact_info: Optional[ContactInfo] = None
    medical_history: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Patient name is required")
        return value
