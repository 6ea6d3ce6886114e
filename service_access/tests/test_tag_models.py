"""
Unit tests for tag and member models.
"""

import pytest
from datetime import datetime, timedelta, timezone

from shared.errors import ValidationError
from service_access.app.identity.models import (
    TagId, Tag, Member, MembershipStatus, StatusSource, TagResponse
)


NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class TestTagId:
    """Test cases for TagId parsing."""

    def test_parse_bytes(self):
        """Test raw UID bytes are accepted as-is."""
        tag_id = TagId.parse(b"\x04\xa2\x3b\x1c")

        assert tag_id.value == b"\x04\xa2\x3b\x1c"
        assert str(tag_id) == "04:A2:3B:1C"
        assert tag_id.hex == "04A23B1C"

    def test_parse_text_forms_are_equal(self):
        """Test case and separators do not change identity."""
        forms = ["04A23B1C", "04a23b1c", "04:a2:3b:1c", "04-A2-3B-1C", "04 A2 3B 1C"]

        parsed = {TagId.parse(form) for form in forms}

        assert parsed == {TagId(b"\x04\xa2\x3b\x1c")}

    def test_parse_seven_and_ten_byte_uids(self):
        """Test double and triple size UIDs."""
        assert len(TagId.parse("04112233445566").value) == 7
        assert len(TagId.parse("04112233445566778899").value) == 10

    def test_parse_is_byte_exact(self):
        """Test identifiers differing in one byte are distinct."""
        assert TagId.parse("04A23B1C") != TagId.parse("04A23B1D")

    @pytest.mark.parametrize("raw", ["", "04A23B1", "ZZA23B1C", "04A23B", b"\x01\x02"])
    def test_parse_rejects_malformed(self, raw):
        """Test malformed identifiers raise ValidationError."""
        with pytest.raises(ValidationError):
            TagId.parse(raw)

    def test_parse_rejects_unsupported_type(self):
        """Test non-text, non-bytes identifiers are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            TagId.parse(12345678)

        assert exc_info.value.details["type"] == "int"

    def test_parse_custom_lengths(self):
        """Test configured lengths replace the defaults."""
        assert TagId.parse("0102030405", allowed_lengths=[5]).value == b"\x01\x02\x03\x04\x05"

        with pytest.raises(ValidationError):
            TagId.parse("01020304", allowed_lengths=[5])


class TestTag:
    """Test cases for Tag snapshots."""

    def test_new_tag_is_unbound_and_active(self):
        """Test a fresh tag."""
        tag = Tag(tag_id=TagId.parse("04A23B1C"))

        assert tag.is_active is True
        assert tag.is_bound is False
        assert tag.serial

    def test_bind_and_revoke_keep_serial(self):
        """Test state transitions keep the issuance serial."""
        tag = Tag(tag_id=TagId.parse("04A23B1C"))

        bound = tag.bind("member-1", NOW)
        revoked = bound.revoke(NOW)

        assert bound.member_id == "member-1"
        assert bound.serial == tag.serial
        assert revoked.revoked is True
        assert revoked.revoked_at == NOW
        assert revoked.serial == tag.serial
        assert tag.member_id is None

    def test_serials_are_unique(self):
        """Test every issuance gets its own serial."""
        tag_id = TagId.parse("04A23B1C")

        assert Tag(tag_id=tag_id).serial != Tag(tag_id=tag_id).serial

    def test_response_uses_display_form(self):
        """Test API representation of a tag."""
        tag = Tag(tag_id=TagId.parse("04a23b1c")).bind("member-1", NOW)

        response = TagResponse.from_tag(tag)

        assert response.tag_id == "04:A2:3B:1C"
        assert response.member_id == "member-1"
        assert response.revoked is False


class TestMember:
    """Test cases for Member snapshots."""

    def test_new_member_is_unverified(self):
        """Test defaults for a member created on first reference."""
        member = Member(member_id="member-1")

        assert member.status == MembershipStatus.UNKNOWN
        assert member.status_source == StatusSource.UNAVAILABLE_FALLBACK
        assert member.status_age(NOW) is None

    def test_status_age(self):
        """Test status age is measured from verification time."""
        member = Member(
            member_id="member-1",
            status=MembershipStatus.ACTIVE,
            status_source=StatusSource.AUTHORITATIVE,
            status_verified_at=NOW - timedelta(minutes=3)
        )

        assert member.status_age(NOW) == timedelta(minutes=3)

    def test_recent_authoritative_status_is_kept(self):
        """Test status inside the max age stays authoritative."""
        member = Member(
            member_id="member-1",
            status=MembershipStatus.ACTIVE,
            status_source=StatusSource.AUTHORITATIVE,
            status_verified_at=NOW - timedelta(minutes=15)
        )

        assert member.as_seen_at(NOW, timedelta(minutes=15)) is member

    def test_old_authoritative_status_is_cached_stale(self):
        """Test status past the max age is presented as cached-stale."""
        member = Member(
            member_id="member-1",
            status=MembershipStatus.ACTIVE,
            status_source=StatusSource.AUTHORITATIVE,
            status_verified_at=NOW - timedelta(minutes=16)
        )

        seen = member.as_seen_at(NOW, timedelta(minutes=15))

        assert seen.status_source == StatusSource.CACHED_STALE
        assert seen.status_verified_at == member.status_verified_at
        assert member.status_source == StatusSource.AUTHORITATIVE

    def test_fallback_status_is_not_rewritten(self):
        """Test non-authoritative sources are left alone."""
        member = Member(
            member_id="member-1",
            status=MembershipStatus.ACTIVE,
            status_source=StatusSource.UNAVAILABLE_FALLBACK,
            status_verified_at=NOW - timedelta(days=3)
        )

        assert member.as_seen_at(NOW, timedelta(minutes=15)) is member
