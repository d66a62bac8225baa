"""
LOAN PARTIES
============

Each side of a loan is either a registered user or an external email.
Modelled as a tagged union so the ledger rules ("at least one side is
registered", "a group needs both sides registered") are plain isinstance
checks instead of null checks on sibling columns.
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class RegisteredParty:
    user_id: int


@dataclass(frozen=True)
class ExternalParty:
    email: str

    @property
    def display_name(self) -> str:
        return self.email.split('@')[0]


Party = Union[RegisteredParty, ExternalParty]


def party_from_columns(user_id, email) -> Optional[Party]:
    """Build a party from a loan's ``*_id`` / ``*_email`` column pair."""
    if user_id is not None:
        return RegisteredParty(user_id)
    if email:
        return ExternalParty(email)
    return None


def party_columns(party: Optional[Party]):
    """Inverse of party_from_columns: returns ``(user_id, email)``."""
    if isinstance(party, RegisteredParty):
        return party.user_id, None
    if isinstance(party, ExternalParty):
        return None, party.email
    return None, None


def is_registered(party: Optional[Party]) -> bool:
    return isinstance(party, RegisteredParty)


def registered_user_ids(*parties):
    """User ids of the registered parties, in order, without duplicates."""
    ids = []
    for party in parties:
        if isinstance(party, RegisteredParty) and party.user_id not in ids:
            ids.append(party.user_id)
    return ids
