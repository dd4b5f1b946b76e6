"""Tests for webhook records and the delivery body."""

from __future__ import annotations

import datetime
import json

import pytest

from thejury.webhooks import ALL_EVENTS, Webhook, WebhookEvent, new_webhook
from thejury.webhooks.events import encode_body, format_timestamp, parse_event


def test_event_catalogue():
    assert ALL_EVENTS == ("vote.created", "poll.created", "poll.updated", "poll.deleted")
    assert str(WebhookEvent.VOTE_CREATED) == "vote.created"


class TestFormatTimestamp:
    def test_utc_millisecond_z(self):
        moment = datetime.datetime(2026, 2, 24, 10, 30, 0, 123456, tzinfo=datetime.timezone.utc)
        assert format_timestamp(moment) == "2026-02-24T10:30:00.123Z"

    def test_naive_treated_as_utc(self):
        assert format_timestamp(datetime.datetime(2026, 1, 1)) == "2026-01-01T00:00:00.000Z"

    def test_offset_converted(self):
        tz = datetime.timezone(datetime.timedelta(hours=2))
        moment = datetime.datetime(2026, 1, 1, 2, 0, tzinfo=tz)
        assert format_timestamp(moment) == "2026-01-01T00:00:00.000Z"


class TestEncodeBody:
    def test_compact_json_in_field_order(self):
        body = encode_body("vote.created", {"poll_id": "p1", "n": 2}, "2026-01-01T00:00:00.000Z")
        assert body == (
            b'{"event":"vote.created","payload":{"poll_id":"p1","n":2},'
            b'"timestamp":"2026-01-01T00:00:00.000Z"}'
        )

    def test_decodes_as_json(self):
        body = encode_body("poll.deleted", {"nested": {"x": [1, None]}}, "t")
        assert json.loads(body) == {
            "event": "poll.deleted",
            "payload": {"nested": {"x": [1, None]}},
            "timestamp": "t",
        }


class TestParseEvent:
    def test_known(self):
        assert parse_event("poll.updated") is WebhookEvent.POLL_UPDATED

    def test_unknown(self):
        with pytest.raises(ValueError, match="unknown webhook event"):
            parse_event("poll.archived")


class TestNewWebhook:
    def test_generates_id_and_secret(self):
        wh = new_webhook("user-1", " https://example.com/hook ", ["vote.created"])
        assert wh.user_id == "user-1"
        assert wh.url == "https://example.com/hook"
        assert wh.events == ["vote.created"]
        assert wh.is_active is True
        assert wh.id and wh.secret and wh.id != wh.secret
        assert wh.created_at is not None

    def test_deduplicates_events(self):
        wh = new_webhook("u", "https://example.com", ["poll.created", "poll.created"])
        assert wh.events == ["poll.created"]

    @pytest.mark.parametrize("url", ["ftp://example.com", "example.com/hook", "https://"])
    def test_rejects_bad_url(self, url):
        with pytest.raises(ValueError, match="url"):
            new_webhook("u", url, ["vote.created"])

    def test_rejects_no_events(self):
        with pytest.raises(ValueError, match="at least one event"):
            new_webhook("u", "https://example.com", [])

    def test_rejects_unknown_event(self):
        with pytest.raises(ValueError, match="unknown webhook event"):
            new_webhook("u", "https://example.com", ["vote.deleted"])


def test_public_view_hides_secret():
    wh = Webhook(
        id="w1",
        user_id="u",
        url="https://example.com",
        secret="top-secret",
        events=["vote.created"],
        last_triggered_at=datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc),
    )
    view = wh.public_view()
    assert "secret" not in view
    assert view["id"] == "w1"
    assert view["last_triggered_at"].startswith("2026-01-01T00:00:00")
    json.dumps(view)
