"""
Test suite for members module
"""

import pytest

from committee_ledger.storage import InMemoryStorage
from committee_ledger.members import (
    Member, MemberManager, next_sequential_id, next_loan_id, next_external_member_id
)


class TestSequentialIds:
    """Test prefixed id sequences"""

    def test_first_id(self):
        assert next_loan_id([]) == "L-1001"
        assert next_external_member_id([]) == "EXT-501"

    def test_continues_from_highest(self):
        assert next_loan_id(["L-1003", "L-1001"]) == "L-1004"

    def test_ignores_foreign_and_malformed_ids(self):
        """Test that ids outside the sequence do not affect it"""
        assert next_sequential_id(["M-9000", "L-abc", "L-1002"], "L-", 1001) == "L-1003"
        assert next_external_member_id(["M-1", "EXT-x"]) == "EXT-501"

    def test_never_restarts_below_first_number(self):
        assert next_sequential_id(["L-7"], "L-", 1001) == "L-1001"
        assert next_loan_id([], first_number=2000) == "L-2000"


class TestMember:
    """Test member validation"""

    def test_requires_id_and_name(self):
        with pytest.raises(ValueError, match="id"):
            Member(id="", name="Asha")
        with pytest.raises(ValueError, match="name"):
            Member(id="M-1", name="   ")

    def test_external_flag(self):
        assert Member(id="EXT-501", name="Ravi").is_external
        assert not Member(id="M-1", name="Asha").is_external


class TestMemberManager:
    """Test member storage and external registration"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.manager = MemberManager(self.storage)

    def test_add_and_get(self):
        member = Member(id="M-1", name="Asha", phone="98450 00000", address="Pune")
        self.manager.add_member(member)

        assert self.manager.get_member("M-1") == member
        assert self.manager.get_member("M-2") is None

    def test_add_replaces(self):
        self.manager.add_member(Member(id="M-1", name="Asha"))
        self.manager.add_member(Member(id="M-1", name="Asha Rao"))

        assert [m.name for m in self.manager.list_members()] == ["Asha Rao"]

    def test_register_external_borrowers(self):
        """Test that external borrowers get sequential EXT- ids"""
        self.manager.add_member(Member(id="M-1", name="Asha"))

        first = self.manager.register_external_borrower("Ravi", phone="99000 11111")
        second = self.manager.register_external_borrower("Meena")

        assert first.id == "EXT-501"
        assert second.id == "EXT-502"
        assert first.is_external
        assert self.manager.get_member("EXT-501").phone == "99000 11111"
        assert len(self.manager.list_members()) == 3

    def test_register_requires_name(self):
        with pytest.raises(ValueError):
            self.manager.register_external_borrower("")
        assert self.manager.list_members() == []
