"""
Response models for Identra Reconciler API
"""
from pydantic import BaseModel, Field
from typing import List


class ContactSummary(BaseModel):
    """Canonical identity and every alias known for it"""
    primaryContactId: int
    emails: List[str] = Field(..., description="Primary's email first, no duplicates")
    phoneNumbers: List[str] = Field(..., description="Primary's phone first, no duplicates")
    secondaryContactIds: List[int] = Field(..., description="Secondary contacts, oldest first")


class IdentifyResponse(BaseModel):
    contact: ContactSummary
