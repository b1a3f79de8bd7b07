"""Change event model tests — filters, scoping, fan-out, provenance."""

import pytest

from reviewsync.errors import ValidationError
from reviewsync.realtime.events import (
    ChangeEvent,
    Operation,
    StreamFilter,
    StreamRequest,
    build_events,
)
from reviewsync.sync.provenance import ProvenanceLedger


# ═══════════════════════════════════════════════════════════
# Filters
# ═══════════════════════════════════════════════════════════


def test_parse_filter():
    f = StreamFilter.parse("content_item_id=eq.42")
    assert (f.column, f.value) == ("content_item_id", "42")
    assert str(f) == "content_item_id=eq.42"
    assert f.scope_key == "content_item_id=42"


@pytest.mark.parametrize("expression", ["", "content_item_id", "content_item_id=42", "=eq.42", "id=eq."])
def test_parse_filter_rejects(expression):
    with pytest.raises(ValidationError):
        StreamFilter.parse(expression)


def test_filter_matches_row_value():
    f = StreamFilter.eq("content_item_id", 42)
    [event] = build_events("comments", Operation.INSERT, {"id": 1, "content_item_id": 42})
    assert f.matches(event)
    [other] = build_events("comments", Operation.INSERT, {"id": 2, "content_item_id": 43})
    assert not f.matches(other)


def test_request_accepts_only_its_kinds():
    request = StreamRequest(
        entity_type="comments",
        filter=StreamFilter.eq("content_item_id", 7),
        event_kinds=frozenset({Operation.DELETE}),
    )
    row = {"id": 1, "content_item_id": 7}
    [insert] = build_events("comments", Operation.INSERT, row)
    [delete] = build_events("comments", Operation.DELETE, {}, old=row)
    assert not request.accepts(insert)
    assert request.accepts(delete)


# ═══════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════


def test_event_fans_out_to_each_scope():
    """A content item update reaches both the item stream and its project stream."""
    row = {"id": "item-1", "project_id": "proj-1", "status": "approved"}
    events = build_events("content_items", Operation.UPDATE, row, old={**row, "status": "in_review"})

    assert sorted(e.scope_key for e in events) == ["id=item-1", "project_id=proj-1"]
    assert len({e.event_id for e in events}) == 1


def test_missing_scope_column_is_skipped():
    events = build_events("content_items", Operation.INSERT, {"id": "item-1", "project_id": None})
    assert [e.scope_key for e in events] == ["id=item-1"]


def test_delete_row_is_old_row():
    old = {"id": "c1", "content_item_id": "i1", "body": "bye"}
    [event] = build_events("comments", Operation.DELETE, {}, old=old)
    assert event.row == old
    assert event.row_id == "c1"
    assert event.scope_key == "content_item_id=i1"


def test_event_json_round_trip():
    [event] = build_events(
        "approvals", Operation.INSERT, {"id": "a1", "content_item_id": "i1"}, provenance="m1"
    )
    assert ChangeEvent.model_validate_json(event.model_dump_json()) == event


# ═══════════════════════════════════════════════════════════
# Provenance
# ═══════════════════════════════════════════════════════════


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _approval_event(**meta):
    [event] = build_events("approvals", Operation.INSERT, {"id": "a1", "content_item_id": "i1"}, **meta)
    return event


def test_ledger_confirms_own_events_until_ttl():
    clock = FakeClock()
    ledger = ProvenanceLedger("me", ttl=10, clock=clock)
    mutation_id = ledger.new_mutation(["approvals", "content_versions"])

    own = _approval_event(origin_actor_id="me", provenance=mutation_id)
    assert ledger.confirm(own)
    # Several events of one mutation all match
    assert ledger.confirm(own)

    clock.now = 10
    assert not ledger.confirm(own)
    assert len(ledger) == 0


def test_ledger_rejects_foreign_and_unlisted_events():
    ledger = ProvenanceLedger("me")
    mutation_id = ledger.new_mutation(["content_versions"])

    assert not ledger.confirm(_approval_event(origin_actor_id="me", provenance=mutation_id))
    assert not ledger.confirm(_approval_event(origin_actor_id="you", provenance=mutation_id))
    assert not ledger.confirm(_approval_event(origin_actor_id="me"))

    ledger.discard(mutation_id)
    assert len(ledger) == 0
