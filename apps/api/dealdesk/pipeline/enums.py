from __future__ import annotations

from enum import StrEnum


class Stage(StrEnum):
    UNIVERSE = "universe"
    QUALIFIED = "qualified"
    OUTREACH = "outreach"
    PITCHING = "pitching"
    MANDATES = "mandates"
    WON = "won"
    LOST = "lost"
    REJECTED = "rejected"


class UniverseStatus(StrEnum):
    OPEN = "open"
    ASSIGNED = "assigned"


class PocStatus(StrEnum):
    RED = "red"
    AMBER = "amber"
    GREEN = "green"


class Role(StrEnum):
    ADMIN = "admin"
    PARTNER = "partner"
    ANALYST = "analyst"
    INTERN = "intern"


class InterventionType(StrEnum):
    LINKEDIN_MESSAGE = "linkedin_message"
    CALL = "call"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    MEETING = "meeting"
    DOCUMENT = "document"


class OutreachStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    SCHEDULED = "scheduled"
    SENT = "sent"
    RECEIVED = "received"
    FOLLOW_UP = "follow_up"
    INVALID = "invalid"


LETTER_OF_ENGAGEMENT = "Letter of Engagement"
CONTRACT = "Contract"
REASSIGNMENT_PURPOSE = "reassignment"
