"""
Request models for Identra Reconciler API
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Optional

from core.contact_model import ContactHelper


class IdentifyRequest(BaseModel):
    """
    Submitted contact pair.

    Normalization happens here, before the reconciler sees the values:
    - email is trimmed and lower-cased
    - phoneNumber may arrive as a string or a number; it becomes a string
    - blank values count as absent
    """
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "email": "mcfly@hillvalley.edu",
                "phoneNumber": "123456"
            }
        }
    )

    email: Optional[str] = Field(
        None,
        description="Email address",
        examples=["mcfly@hillvalley.edu"]
    )
    phone_number: Optional[str] = Field(
        None,
        alias="phoneNumber",
        description="Phone number (string or number)",
        examples=["123456"]
    )

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> Optional[str]:
        if value is not None and not isinstance(value, str):
            raise ValueError("email must be a string")
        return ContactHelper.normalize_email(value)

    @field_validator("phone_number", mode="before")
    @classmethod
    def _normalize_phone(cls, value: Any) -> Optional[str]:
        return ContactHelper.normalize_phone(value)
