"""Tests for PII detection and metadata sanitizing."""
import pytest

from herotrack.shared.utils.pii import (
    MAX_FREE_TEXT_LENGTH,
    find_pii_in_text,
    is_identifying_key,
    sanitize_metadata,
    scan_for_pii,
)


class TestIdentifyingKeys:
    """Tests for key-name detection."""

    @pytest.mark.parametrize("key", [
        "name", "student_name", "firstName", "email", "parentEmail",
        "phone_number", "home_address", "ip", "device_id", "deviceId",
        "user_id", "student_id", "subject_local_id", "date_of_birth", "contact",
    ])
    def test_identifying(self, key):
        assert is_identifying_key(key) is True

    @pytest.mark.parametrize("key", [
        "participation", "duration_ms", "attempts", "step", "hint_used",
        "ipsative_rank", "module", "emailed", "",
    ])
    def test_not_identifying(self, key):
        assert is_identifying_key(key) is False


class TestFindPiiInText:
    """Tests for string pattern matching."""

    @pytest.mark.parametrize("text,kind", [
        ("reach me at kid@example.com", "email"),
        ("call 555-123-4567", "phone"),
        ("(555) 123-4567", "phone"),
        ("ssn 123-45-6789", "ssn"),
        ("from 192.168.1.20", "ip_address"),
        ("lives at 42 Maple Street", "street_address"),
    ])
    def test_detects(self, text, kind):
        assert kind in find_pii_in_text(text)

    @pytest.mark.parametrize("text", [
        "empathy_card_3", "level 2", "2024-03-14", "score 4 of 5", "v1.2.3",
    ])
    def test_clean(self, text):
        assert find_pii_in_text(text) == []


class TestScanForPii:
    """Tests for recursive scanning."""

    def test_clean_metadata(self):
        assert scan_for_pii({"step": 3, "module": "sharing", "tags": ["a", "b"]}) == []

    def test_nested_findings_have_paths(self):
        findings = scan_for_pii({"context": {"notes": ["ok", "mail kid@example.com"]}})

        assert len(findings) == 1
        assert findings[0].path == "context.notes[1]"
        assert findings[0].kind == "email"

    def test_identifying_key_reported(self):
        findings = scan_for_pii({"studentName": "Alex"})

        assert [f.kind for f in findings] == ["identifying_key"]

    def test_free_text_reported(self):
        findings = scan_for_pii({"note": "x" * (MAX_FREE_TEXT_LENGTH + 1)})

        assert [f.kind for f in findings] == ["free_text"]

    def test_numbers_not_scanned(self):
        assert scan_for_pii({"count": 5551234567}) == []


class TestSanitizeMetadata:
    """Tests for client-side stripping."""

    def test_strips_identifying_values(self):
        clean, dropped = sanitize_metadata({
            "step": 2,
            "student_name": "Alex",
            "note": "email me at a@b.co",
            "nested": {"device_id": "abc", "round": 1},
            "list": ["ok", "555-123-4567"],
        })

        assert clean == {"step": 2, "nested": {"round": 1}, "list": ["ok"]}
        assert dropped == 4

    def test_drops_long_free_text(self):
        clean, dropped = sanitize_metadata({"reflection": "y" * 500})

        assert clean == {}
        assert dropped == 1

    def test_drops_non_json_values(self):
        clean, dropped = sanitize_metadata({"obj": object(), "ok": True})

        assert clean == {"ok": True}
        assert dropped == 1

    def test_none_metadata(self):
        assert sanitize_metadata(None) == ({}, 0)
