"""
Purchase request lifecycle tests.

Covers:
  - Transition table (allowed edges, terminal states)
  - send / start_collecting / complete / cancel through the service layer
  - Guard rails: lines before sending, winner before completing, reason on cancel
  - Winner selection rules
  - Exactly one audit entry per transition and per winner selection
  - Number generation, header update and delete rules
"""

import pytest

from fabstock.core.exceptions import (
    ConflictError,
    DeletionNotAllowedError,
    DuplicateIdentityError,
    InvalidTransitionError,
    MissingReasonError,
    MissingWinnerError,
    NoQuoteFromSupplierError,
    NotCollectingError,
    StatusLockedError,
    ValidationError,
)
from fabstock.models.audit import AuditEntry
from fabstock.models.purchase_request import (
    PR_TRANSITIONS,
    allowed_pr_transitions,
    validate_pr_transition,
)
from fabstock.services import purchase_request_service as prs


def _audit(pr_id, action=None):
    q = AuditEntry.query.filter_by(entity_type="purchase_request", entity_id=str(pr_id))
    if action:
        q = q.filter_by(action=action)
    return q.order_by(AuditEntry.id).all()


def _to_collecting(make_pr, tenant_id, buyer, quotes=()):
    pr = make_pr(lines=1)
    prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    line_id = pr.active_lines[0].id
    for supplier_id, price in quotes:
        prs.add_quote(tenant_id, pr.id, {
            "supplier_id": supplier_id,
            "items": [{"line_id": line_id, "quantity": 10, "unit_price": price}],
        }, actor=buyer)
    prs.start_collecting(tenant_id, pr.id, actor=buyer)
    return pr


# ── Transition table ─────────────────────────────────────────────────────────


@pytest.mark.parametrize("old,new,ok", [
    ("draft", "sent", True),
    ("draft", "canceled", True),
    ("draft", "collecting", False),
    ("draft", "completed", False),
    ("sent", "collecting", True),
    ("sent", "canceled", True),
    ("sent", "draft", False),
    ("collecting", "completed", True),
    ("collecting", "canceled", True),
    ("collecting", "sent", False),
    ("completed", "canceled", False),
    ("canceled", "draft", False),
])
def test_transition_table(old, new, ok):
    assert validate_pr_transition(old, new) is ok


def test_terminal_states_have_no_exits():
    assert PR_TRANSITIONS["completed"] == []
    assert allowed_pr_transitions("canceled") == []
    assert allowed_pr_transitions("unknown") == []


# ── Creation ─────────────────────────────────────────────────────────────────


def test_create_generates_sequential_numbers(make_pr):
    first = make_pr()
    second = make_pr()
    assert (first.number, second.number) == ("PR-0001", "PR-0002")
    assert first.status == "draft"
    assert first.requested_by == "Ben Buyer"


def test_numbers_are_per_tenant(make_pr, other_tenant_id):
    make_pr()
    assert make_pr(tenant=other_tenant_id).number == "PR-0001"


def test_supplied_number_must_be_unique(make_pr):
    make_pr(number="PR-9000")
    with pytest.raises(DuplicateIdentityError):
        make_pr(number="PR-9000")


def test_create_requires_title(tenant_id, buyer):
    with pytest.raises(ValidationError, match="Title is required"):
        prs.create_purchase_request(tenant_id, {"title": "  "}, actor=buyer)


def test_create_is_audited(make_pr):
    pr = make_pr()
    entries = _audit(pr.id, "create")
    assert len(entries) == 1
    assert entries[0].new_value == "draft"
    assert entries[0].context == {"number": "PR-0001"}


# ── Happy path ───────────────────────────────────────────────────────────────


def test_full_lifecycle(make_pr, tenant_id, buyer):
    pr = _to_collecting(make_pr, tenant_id, buyer, quotes=[(501, 10), (502, 12)])
    prs.select_winner(tenant_id, pr.id, 501, actor=buyer, reason="cheapest")
    done = prs.complete(tenant_id, pr.id, actor=buyer)

    assert done.status == "completed"
    assert done.is_terminal
    assert done.sent_by == "Ben Buyer"
    assert done.collecting_started_by == "Ben Buyer"
    assert done.completed_by == "Ben Buyer"
    assert done.completed_date is not None
    assert prs.available_transitions(done) == []


def test_one_audit_entry_per_transition(make_pr, tenant_id, buyer):
    pr = _to_collecting(make_pr, tenant_id, buyer, quotes=[(501, 10)])
    prs.select_winner(tenant_id, pr.id, 501, actor=buyer)
    prs.complete(tenant_id, pr.id, actor=buyer)

    status_entries = [e for e in _audit(pr.id) if e.field_name == "status" and e.action != "create"]
    assert [(e.action, e.old_value, e.new_value) for e in status_entries] == [
        ("purchase_request.send", "draft", "sent"),
        ("purchase_request.start_collecting", "sent", "collecting"),
        ("purchase_request.complete", "collecting", "completed"),
    ]
    assert len(_audit(pr.id, "purchase_request.select_winner")) == 1


# ── Guards ───────────────────────────────────────────────────────────────────


def test_send_without_lines_rejected(make_pr, tenant_id, buyer):
    pr = make_pr(lines=0)
    with pytest.raises(ValidationError, match="at least one line"):
        prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    assert prs.get_purchase_request(tenant_id, pr.id).status == "draft"
    assert _audit(pr.id, "purchase_request.send") == []


def test_skipping_a_state_rejected(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    with pytest.raises(InvalidTransitionError) as exc_info:
        prs.start_collecting(tenant_id, pr.id, actor=buyer)
    assert exc_info.value.current == "draft"
    assert exc_info.value.attempted == "collecting"
    assert exc_info.value.allowed == ["sent", "canceled"]


def test_complete_without_winner_rejected(make_pr, tenant_id, buyer):
    pr = _to_collecting(make_pr, tenant_id, buyer, quotes=[(501, 10)])
    with pytest.raises(MissingWinnerError):
        prs.complete(tenant_id, pr.id, actor=buyer)
    assert prs.get_purchase_request(tenant_id, pr.id).status == "collecting"


def test_complete_from_sent_is_invalid_transition(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    with pytest.raises(InvalidTransitionError):
        prs.complete(tenant_id, pr.id, actor=buyer)


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_cancel_requires_reason(make_pr, tenant_id, buyer, reason):
    pr = make_pr(lines=1)
    with pytest.raises(MissingReasonError):
        prs.cancel(tenant_id, pr.id, reason, actor=buyer)
    assert prs.get_purchase_request(tenant_id, pr.id).status == "draft"


@pytest.mark.parametrize("stage", ["draft", "sent", "collecting"])
def test_cancel_from_any_open_state(make_pr, tenant_id, buyer, stage):
    pr = make_pr(lines=1)
    if stage in ("sent", "collecting"):
        prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    if stage == "collecting":
        prs.start_collecting(tenant_id, pr.id, actor=buyer)

    canceled = prs.cancel(tenant_id, pr.id, "  budget cut ", actor=buyer)

    assert canceled.status == "canceled"
    assert canceled.cancellation_reason == "budget cut"
    assert canceled.canceled_by == "Ben Buyer"
    entry = _audit(pr.id, "purchase_request.cancel")[0]
    assert (entry.old_value, entry.new_value, entry.reason) == (stage, "canceled", "budget cut")


def test_terminal_states_reject_everything(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    prs.cancel(tenant_id, pr.id, "duplicate", actor=buyer)
    with pytest.raises(InvalidTransitionError) as exc_info:
        prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    assert exc_info.value.allowed == []
    with pytest.raises(InvalidTransitionError):
        prs.cancel(tenant_id, pr.id, "again", actor=buyer)


def test_generic_transition_dispatch(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    assert prs.transition_purchase_request(tenant_id, pr.id, "sent", actor=buyer).status == "sent"
    with pytest.raises(InvalidTransitionError):
        prs.transition_purchase_request(tenant_id, pr.id, "draft", actor=buyer)
    with pytest.raises(ValidationError):
        prs.transition_purchase_request(tenant_id, pr.id, "archived", actor=buyer)
    with pytest.raises(MissingReasonError):
        prs.transition_purchase_request(tenant_id, pr.id, "canceled", actor=buyer)


def test_stale_expected_version_rejected(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    stale = prs.get_purchase_request(tenant_id, pr.id).version - 1
    with pytest.raises(ConflictError):
        prs.send_for_quotes(tenant_id, pr.id, actor=buyer, expected_version=stale)


# ── Winner selection ─────────────────────────────────────────────────────────


def test_select_winner_requires_collecting(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    with pytest.raises(NotCollectingError) as exc_info:
        prs.select_winner(tenant_id, pr.id, 501, actor=buyer)
    assert exc_info.value.current == "sent"
    assert isinstance(exc_info.value, InvalidTransitionError)


def test_select_winner_requires_supplier_quote(make_pr, tenant_id, buyer):
    pr = _to_collecting(make_pr, tenant_id, buyer, quotes=[(501, 10)])
    with pytest.raises(NoQuoteFromSupplierError) as exc_info:
        prs.select_winner(tenant_id, pr.id, 999, actor=buyer)
    assert exc_info.value.supplier_id == 999
    assert prs.get_purchase_request(tenant_id, pr.id).winner_supplier_id is None


def test_reselecting_winner_moves_selection(make_pr, tenant_id, buyer):
    pr = _to_collecting(make_pr, tenant_id, buyer, quotes=[(501, 10), (502, 12)])
    prs.select_winner(tenant_id, pr.id, 501, actor=buyer)
    updated = prs.select_winner(tenant_id, pr.id, 502, actor=buyer, reason="faster delivery")

    assert updated.winner_supplier_id == 502
    assert updated.winner_selection_reason == "faster delivery"
    selected = [q.supplier_id for q in updated.active_quotes if q.is_selected]
    assert selected == [502]
    assert updated.winner_quote_id == next(q.id for q in updated.active_quotes if q.supplier_id == 502)

    entries = _audit(pr.id, "purchase_request.select_winner")
    assert len(entries) == 2
    assert [(e.old_value, e.new_value) for e in entries] == [(None, "501"), ("501", "502")]


def test_supplier_with_two_quotes_wins_with_cheapest(make_pr, tenant_id, buyer):
    pr = _to_collecting(make_pr, tenant_id, buyer, quotes=[(501, 15), (501, 11)])
    updated = prs.select_winner(tenant_id, pr.id, 501, actor=buyer)
    winner = next(q for q in updated.active_quotes if q.id == updated.winner_quote_id)
    assert str(winner.total_amount) == "110.00"


# ── Header update / delete ───────────────────────────────────────────────────


def test_update_header_only_while_draft(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    updated = prs.update_purchase_request(tenant_id, pr.id, {"title": "Steel for hall C"}, actor=buyer)
    assert updated.title == "Steel for hall C"

    prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    with pytest.raises(StatusLockedError):
        prs.update_purchase_request(tenant_id, pr.id, {"title": "late edit"}, actor=buyer)


def test_delete_only_draft_or_canceled(make_pr, tenant_id, buyer):
    draft = make_pr(lines=1)
    prs.delete_purchase_request(tenant_id, draft.id, actor=buyer)
    assert prs.list_purchase_requests(tenant_id) == []

    sent = make_pr(lines=1)
    prs.send_for_quotes(tenant_id, sent.id, actor=buyer)
    with pytest.raises(DeletionNotAllowedError):
        prs.delete_purchase_request(tenant_id, sent.id, actor=buyer)

    prs.cancel(tenant_id, sent.id, "not needed", actor=buyer)
    prs.delete_purchase_request(tenant_id, sent.id, actor=buyer)
    assert prs.list_purchase_requests(tenant_id, status="canceled") == []


def test_list_filters_by_status(make_pr, tenant_id, buyer):
    a = make_pr(lines=1)
    make_pr(lines=1)
    prs.send_for_quotes(tenant_id, a.id, actor=buyer)
    assert [p.id for p in prs.list_purchase_requests(tenant_id, status="sent")] == [a.id]
    with pytest.raises(ValidationError):
        prs.list_purchase_requests(tenant_id, status="bogus")
