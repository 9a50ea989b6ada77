"""
Contact Domain Models

Identity Reconciliation
- A cluster is one primary contact plus its direct secondaries
- Secondaries always link to the current primary (depth one)
- Precedence only moves primary -> secondary, never back
- Soft-deleted contacts never take part in matching
"""

from datetime import datetime, timezone
from typing import Optional, Dict, List, Iterable, Any
from enum import Enum
import hashlib
import math


class LinkPrecedence(str, Enum):
    """Role of a contact within its cluster"""
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact:
    """
    A single known way to reach a person.
    email / phone_number are never edited after creation; only
    link_precedence, linked_id and updated_at are rewritten on merge.
    """
    def __init__(
        self,
        id: int,
        email: Optional[str],
        phone_number: Optional[str],
        link_precedence: LinkPrecedence,
        linked_id: Optional[int] = None,
        created_at: datetime = None,
        updated_at: datetime = None,
        deleted_at: Optional[datetime] = None
    ):
        now = datetime.now(timezone.utc)
        self.id = id
        self.email = email
        self.phone_number = phone_number
        self.link_precedence = LinkPrecedence(link_precedence)
        self.linked_id = linked_id
        self.created_at = created_at or now
        self.updated_at = updated_at or self.created_at
        self.deleted_at = deleted_at

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY

    @property
    def cluster_root(self) -> int:
        """Id of the primary this contact belongs to"""
        if self.is_primary or self.linked_id is None:
            return self.id
        return self.linked_id

    @classmethod
    def from_row(cls, row: Any) -> 'Contact':
        """Map a `contacts` row (SQLAlchemy Row or mapping) to a Contact"""
        data = row._mapping if hasattr(row, '_mapping') else row
        return cls(
            id=data['id'],
            email=data['email'],
            phone_number=data['phone_number'],
            link_precedence=data['link_precedence'],
            linked_id=data['linked_id'],
            created_at=data['created_at'],
            updated_at=data['updated_at'],
            deleted_at=data['deleted_at']
        )

    def to_row(self) -> Dict:
        return {
            'id': self.id,
            'email': self.email,
            'phone_number': self.phone_number,
            'link_precedence': self.link_precedence.value,
            'linked_id': self.linked_id,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'deleted_at': self.deleted_at
        }

    def __repr__(self) -> str:
        return (
            f"Contact(id={self.id}, email={self.email!r}, phone_number={self.phone_number!r}, "
            f"link_precedence={self.link_precedence.value}, linked_id={self.linked_id})"
        )


class IdentityView:
    """
    Result of one reconciliation: the canonical primary plus all aliases.
    Carries the resolution steps for the audit trail.
    """
    def __init__(
        self,
        primary_contact_id: int,
        emails: List[str],
        phone_numbers: List[str],
        secondary_contact_ids: List[int],
        resolution_id: str = None,
        resolution_steps: List[str] = None
    ):
        self.primary_contact_id = primary_contact_id
        self.emails = emails
        self.phone_numbers = phone_numbers
        self.secondary_contact_ids = secondary_contact_ids
        self.resolution_id = resolution_id
        self.resolution_steps = resolution_steps or []
        self.resolved_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict:
        return {
            'contact': {
                'primaryContactId': self.primary_contact_id,
                'emails': self.emails,
                'phoneNumbers': self.phone_numbers,
                'secondaryContactIds': self.secondary_contact_ids
            }
        }


class ContactHelper:
    """Utility functions for contact normalization and ordering"""

    @staticmethod
    def normalize_email(email: Optional[str]) -> Optional[str]:
        """Trim and lower-case; blank means absent"""
        if email is None:
            return None
        normalized = email.strip().lower()
        return normalized or None

    @staticmethod
    def normalize_phone(phone: Any) -> Optional[str]:
        """
        Canonical string form of a phone number.
        Numbers are rendered as text (1e3 -> "1000", 123.5 -> "123.5");
        strings are trimmed.
        """
        if phone is None:
            return None
        if isinstance(phone, bool):
            raise ValueError("phoneNumber must be a string or a number")
        if isinstance(phone, int):
            return str(phone)
        if isinstance(phone, float):
            if not math.isfinite(phone):
                raise ValueError("phoneNumber must be a finite number")
            return str(int(phone)) if phone.is_integer() else str(phone)
        if not isinstance(phone, str):
            raise ValueError("phoneNumber must be a string or a number")
        normalized = phone.strip()
        return normalized or None

    @staticmethod
    def hash_value(value: str) -> str:
        """Stable digest for keys and audit rows that must not carry raw PII"""
        return hashlib.sha256(value.encode()).hexdigest()

    @staticmethod
    def sort_key(contact: Contact):
        """Creation order, ties broken by the smaller id"""
        return (contact.created_at, contact.id)

    @staticmethod
    def unique_in_order(values: Iterable[Optional[str]]) -> List[str]:
        """Drop nulls and repeats, keep first-seen order"""
        seen = set()
        out = []
        for value in values:
            if not value or value in seen:
                continue
            seen.add(value)
            out.append(value)
        return out
