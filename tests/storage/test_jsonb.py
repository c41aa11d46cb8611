"""Unit tests for calhub.storage.jsonb."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from calhub.storage.events import _event_args
from calhub.storage.jsonb import decode_jsonb, encode_jsonb, strip_nul
from tests.doubles import make_event

pytestmark = pytest.mark.unit


def test_none_stays_sql_null():
    assert encode_jsonb(None) is None


def test_nul_characters_never_reach_the_payload():
    encoded = encode_jsonb({"ical": "SUMMARY:Good\x00tail", "k\x00ey": ["a\x00", 1]})

    assert encoded is not None
    assert "\\u0000" not in encoded
    assert json.loads(encoded) == {"ical": "SUMMARY:Goodtail", "key": ["a", 1]}


def test_strip_nul_leaves_non_text_alone():
    stamp = datetime(2026, 3, 1, tzinfo=UTC)

    assert strip_nul(stamp) is stamp
    assert strip_nul(3) == 3
    assert strip_nul(None) is None


def test_event_args_strip_nul_from_text_columns():
    event = make_event("id\x00-1", title="Stand\x00up").model_copy(
        update={"location": "Room\x001", "raw": {"summary": "Stand\x00up"}}
    )

    args = _event_args(7, event)

    assert args[1] == "id-1"
    assert args[2] == "Standup"
    assert args[4] == "Room1"
    assert "\\u0000" not in args[-1]


def test_decode_handles_double_encoded_values():
    assert decode_jsonb(json.dumps(json.dumps({"a": 1}))) == {"a": 1}
    assert decode_jsonb({"a": 1}) == {"a": 1}
