"""
Member Module

Member records and the sequential identifiers handed out for loans and for
borrowers registered from outside the committee.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .config import get_config
from .logging_config import get_logger, log_action
from .storage import StorageInterface

LOAN_ID_PREFIX = "L-"
EXTERNAL_MEMBER_PREFIX = "EXT-"


@dataclass(frozen=True)
class Member:
    """A committee member or an externally registered borrower"""
    id: str
    name: str
    phone: str = ""
    address: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("Member id is required")
        if not self.name or not self.name.strip():
            raise ValueError("Member name is required")

    @property
    def is_external(self) -> bool:
        """Borrowers registered only to take a loan carry the EXT- prefix"""
        return self.id.startswith(EXTERNAL_MEMBER_PREFIX)


def next_sequential_id(existing_ids: Iterable[str], prefix: str, first_number: int) -> str:
    """
    Next id in a prefixed numeric sequence.

    Ids with the prefix but no parsable number are ignored, and the sequence
    never restarts below ``first_number``.

    >>> next_sequential_id(["L-1001", "L-1007", "legacy"], "L-", 1001)
    'L-1008'
    """
    highest = first_number - 1
    for record_id in existing_ids:
        if not record_id.startswith(prefix):
            continue
        try:
            highest = max(highest, int(record_id[len(prefix):]))
        except ValueError:
            continue
    return f"{prefix}{highest + 1}"


def next_loan_id(existing_ids: Iterable[str], first_number: Optional[int] = None) -> str:
    if first_number is None:
        first_number = get_config().first_loan_number
    return next_sequential_id(existing_ids, LOAN_ID_PREFIX, first_number)


def next_external_member_id(existing_ids: Iterable[str], first_number: Optional[int] = None) -> str:
    if first_number is None:
        first_number = get_config().first_external_member_number
    return next_sequential_id(existing_ids, EXTERNAL_MEMBER_PREFIX, first_number)


class MemberManager:
    """Stores members and registers external borrowers"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.members_table = "members"
        self.logger = get_logger("committee_ledger.members")

    def add_member(self, member: Member) -> Member:
        """Add or replace a member record"""
        self.storage.save(self.members_table, member.id, self._member_to_dict(member))
        log_action(
            self.logger, "info", f"Member saved: {member.id}",
            action="add_member", resource=f"member:{member.id}"
        )
        return member

    def register_external_borrower(self, name: str, phone: str = "", address: str = "") -> Member:
        """Register a non-member borrower under the next EXT- id"""
        with self.storage.atomic():
            member_id = next_external_member_id(
                data['id'] for data in self.storage.load_all(self.members_table)
            )
            return self.add_member(Member(id=member_id, name=name, phone=phone, address=address))

    def get_member(self, member_id: str) -> Optional[Member]:
        data = self.storage.load(self.members_table, member_id)
        if data:
            return self._member_from_dict(data)
        return None

    def list_members(self) -> List[Member]:
        return [self._member_from_dict(data) for data in self.storage.load_all(self.members_table)]

    def _member_to_dict(self, member: Member) -> Dict:
        return {
            'id': member.id,
            'name': member.name,
            'phone': member.phone,
            'address': member.address
        }

    def _member_from_dict(self, data: Dict) -> Member:
        return Member(
            id=data['id'],
            name=data['name'],
            phone=data.get('phone', ''),
            address=data.get('address', '')
        )
