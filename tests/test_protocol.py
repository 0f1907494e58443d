"""Request line parsing and encoding."""

from __future__ import annotations

import pytest

from notify_relay_server import (
    RESPONSE_INVALID,
    NotificationRequest,
    encode_request,
    parse_request,
)


# ── parse_request: shape ─────────────────────────────────────────────────


class TestParseShape:
    def test_minimal(self):
        note = parse_request("NOTIFY|Build|Compilation finished\n")
        assert note == NotificationRequest(
            title="Build",
            message="Compilation finished",
            url=None,
            timeout=None,
            type="info",
        )

    def test_all_fields(self):
        note = parse_request("NOTIFY|Review|Click here|https://example.com/pr/1|12|needs_input")
        assert note is not None
        assert note.title == "Review"
        assert note.message == "Click here"
        assert note.url == "https://example.com/pr/1"
        assert note.timeout == 12
        assert note.type == "needs_input"

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "\n",
            "NOTIFY",
            "NOTIFY|only-title",
            "notify|a|b",
            " NOTIFIED|a|b",
            "PING|a|b",
            "hello world",
            "|NOTIFY|a|b",
        ],
    )
    def test_malformed(self, line):
        assert parse_request(line) is None

    def test_crlf_line_ending(self):
        note = parse_request("NOTIFY|T|M|||error\r\n")
        assert note is not None
        assert note.type == "error"

    def test_extra_separators_stay_in_type(self):
        note = parse_request("NOTIFY|T|M|||task|complete")
        assert note is not None
        assert note.type == "task|complete"

    def test_error_line_text(self):
        assert RESPONSE_INVALID == (
            "ERROR: Invalid format. Use: NOTIFY|title|message|url|timeout|type"
        )


# ── parse_request: optional fields ───────────────────────────────────────


class TestParseOptionalFields:
    def test_blank_url_absent(self):
        note = parse_request("NOTIFY|T|M|   |5")
        assert note is not None
        assert note.url is None
        assert note.timeout == 5

    def test_url_trimmed(self):
        note = parse_request("NOTIFY|T|M| https://x.test/a |")
        assert note is not None
        assert note.url == "https://x.test/a"
        assert note.timeout is None

    def test_zero_timeout_kept(self):
        note = parse_request("NOTIFY|T|M||0|error")
        assert note is not None
        assert note.timeout == 0

    def test_padded_timeout(self):
        note = parse_request("NOTIFY|T|M|| 30 |error")
        assert note is not None
        assert note.timeout == 30

    @pytest.mark.parametrize("field", ["soon", "5s", "1.5", "--"])
    def test_non_numeric_timeout_is_absent(self, field):
        note = parse_request(f"NOTIFY|T|M||{field}|error")
        assert note is not None
        assert note.timeout is None
        assert note.type == "error"

    def test_type_trimmed(self):
        note = parse_request("NOTIFY|Build|Compilation failed||| error")
        assert note is not None
        assert note.type == "error"

    def test_blank_type_defaults_to_info(self):
        note = parse_request("NOTIFY|T|M|||   ")
        assert note is not None
        assert note.type == "info"


# ── parse_request: defaulting ────────────────────────────────────────────


class TestParseDefaulting:
    def test_empty_message_swaps(self):
        note = parse_request("NOTIFY|X|")
        assert note is not None
        assert note.title == "Notification"
        assert note.message == "X"

    def test_empty_message_with_type(self):
        note = parse_request("NOTIFY|Done||||task_complete")
        assert note is not None
        assert (note.title, note.message, note.type) == (
            "Notification",
            "Done",
            "task_complete",
        )

    def test_both_empty(self):
        note = parse_request("NOTIFY||")
        assert note is not None
        assert note.title == "Notification"
        assert note.message == ""

    def test_empty_title_with_message_unchanged(self):
        note = parse_request("NOTIFY||body")
        assert note is not None
        assert note.title == ""
        assert note.message == "body"


# ── encode_request ───────────────────────────────────────────────────────


class TestEncodeRequest:
    def test_minimal(self):
        assert encode_request("T", "M") == "NOTIFY|T|M\n"

    def test_trailing_absent_fields_dropped(self):
        assert encode_request("T", "M", url="https://x.test") == (
            "NOTIFY|T|M|https://x.test\n"
        )

    def test_intermediate_fields_left_empty(self):
        assert encode_request("T", "M", type="error") == "NOTIFY|T|M|||error\n"

    def test_zero_timeout_sent(self):
        assert encode_request("T", "M", timeout=0) == "NOTIFY|T|M||0\n"

    def test_separators_and_newlines_cleaned(self):
        line = encode_request("a|b", "line1\nline2\r", type="error")
        assert line == "NOTIFY|a/b|line1 line2 |||error\n"
        assert line.count("\n") == 1

    def test_parses_back(self):
        line = encode_request(
            "Review", "PR ready", url="https://example.com/pr/1", timeout=7, type="success"
        )
        assert parse_request(line) == NotificationRequest(
            title="Review",
            message="PR ready",
            url="https://example.com/pr/1",
            timeout=7,
            type="success",
        )

    def test_single_payload_parses_as_body(self):
        note = parse_request(encode_request("All tests passed", ""))
        assert note is not None
        assert note.title == "Notification"
        assert note.message == "All tests passed"
