"""
Purchase request lines and quotes.

Covers:
  - Lines: add/update/remove only while draft, numbering, validation
  - Quotes: add/update/remove only while sent or collecting
  - Quote item pricing (discount, totals) and per-supplier totals
  - Child mutations bump the parent request version
"""

import json
from decimal import Decimal

import pytest

from fabstock.core.exceptions import DeletionNotAllowedError, StatusLockedError, ValidationError
from fabstock.models.audit import AuditEntry
from fabstock.services import purchase_request_service as prs


def _line(**kw):
    data = {"material_type": "sheet", "grade": "S235", "thickness_mm": 10, "width_mm": 1500,
            "length_mm": 3000, "quantity": 4, "unit_of_measure": "pcs"}
    data.update(kw)
    return data


# ── Lines ────────────────────────────────────────────────────────────────────


def test_add_lines_numbers_sequentially(make_pr, tenant_id, buyer):
    pr = make_pr()
    first = prs.add_line(tenant_id, pr.id, _line(), actor=buyer)
    second = prs.add_line(tenant_id, pr.id, _line(material_type="other", quantity="12.5",
                                                  unit_of_measure="kg"), actor=buyer)

    assert (first.line_number, second.line_number) == (1, 2)
    assert first.dimensions == "10x1500x3000"
    assert second.quantity == Decimal("12.5")

    entry = AuditEntry.query.filter_by(action="purchase_request.add_line",
                                       entity_id=str(first.id)).one()
    assert entry.entity_type == "purchase_request_line"
    assert entry.context == {"purchase_request_id": pr.id}
    assert json.loads(entry.new_value)["line_number"] == 1


def test_line_numbers_continue_after_removal(make_pr, tenant_id, buyer):
    pr = make_pr()
    prs.add_line(tenant_id, pr.id, _line(), actor=buyer)
    second = prs.add_line(tenant_id, pr.id, _line(), actor=buyer)
    prs.remove_line(tenant_id, second.id, actor=buyer)
    third = prs.add_line(tenant_id, pr.id, _line(), actor=buyer)
    assert third.line_number == 3
    assert [ln.line_number for ln in prs.get_purchase_request(tenant_id, pr.id).active_lines] == [1, 3]


@pytest.mark.parametrize("bad", [
    {"material_type": "wood"},
    {"quantity": 0},
    {"unit_of_measure": "ton"},
    {"thickness_mm": -2},
])
def test_line_validation(make_pr, tenant_id, buyer, bad):
    pr = make_pr()
    with pytest.raises(ValidationError):
        prs.add_line(tenant_id, pr.id, _line(**bad), actor=buyer)


def test_lines_locked_after_send(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    line_id = pr.active_lines[0].id
    prs.send_for_quotes(tenant_id, pr.id, actor=buyer)

    with pytest.raises(StatusLockedError) as exc_info:
        prs.add_line(tenant_id, pr.id, _line(), actor=buyer)
    assert exc_info.value.status == "sent"
    assert exc_info.value.allowed_statuses == ["draft"]
    with pytest.raises(StatusLockedError):
        prs.update_line(tenant_id, line_id, {"quantity": 2}, actor=buyer)
    with pytest.raises(StatusLockedError):
        prs.remove_line(tenant_id, line_id, actor=buyer)


def test_update_line_audits_diff(make_pr, tenant_id, buyer):
    pr = make_pr()
    line = prs.add_line(tenant_id, pr.id, _line(quantity=4), actor=buyer)
    prs.update_line(tenant_id, line.id, {"quantity": 6, "grade": "S235"}, actor=buyer)

    entry = AuditEntry.query.filter_by(action="purchase_request.update_line").one()
    assert json.loads(entry.old_value) == {"quantity": "4.000"}
    assert json.loads(entry.new_value) == {"quantity": "6"}


def test_child_mutation_bumps_request_version(make_pr, tenant_id, buyer):
    pr = make_pr()
    before = prs.get_purchase_request(tenant_id, pr.id).version
    prs.add_line(tenant_id, pr.id, _line(), actor=buyer)
    assert prs.get_purchase_request(tenant_id, pr.id).version == before + 1


# ── Quotes ───────────────────────────────────────────────────────────────────


def _sent_pr(make_pr, tenant_id, buyer):
    pr = make_pr(lines=2)
    prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    return pr, [ln.id for ln in pr.active_lines]


def test_quote_total_applies_discount(make_pr, tenant_id, buyer):
    pr, (l1, l2) = _sent_pr(make_pr, tenant_id, buyer)
    quote = prs.add_quote(tenant_id, pr.id, {
        "supplier_id": 501, "supplier_name": "Nordic Steel", "currency": "SEK",
        "items": [
            {"line_id": l1, "quantity": 10, "unit_price": "12.50"},
            {"line_id": l2, "quantity": 4, "unit_price": "100", "discount_percent": "10"},
        ],
    }, actor=buyer)

    assert quote.total_amount == Decimal("485.00")
    assert [str(i.line_total) for i in quote.items] == ["125.00", "360.00"]
    entry = AuditEntry.query.filter_by(action="purchase_request.add_quote").one()
    assert entry.new_value == "485.00"
    assert entry.context == {"purchase_request_id": pr.id, "supplier_id": 501}


def test_quote_item_defaults_to_line_quantity(make_pr, tenant_id, buyer):
    pr, (l1, _) = _sent_pr(make_pr, tenant_id, buyer)
    quote = prs.add_quote(tenant_id, pr.id, {
        "supplier_id": 501, "items": [{"line_id": l1, "unit_price": 2}],
    }, actor=buyer)
    assert quote.items[0].quantity == Decimal("10")
    assert quote.total_amount == Decimal("20.00")


@pytest.mark.parametrize("data", [
    {"supplier_id": None},
    {"supplier_id": 501, "currency": "XXX"},
    {"supplier_id": 501, "delivery_days": -1},
    {"supplier_id": 501, "items": [{"line_id": 99999, "unit_price": 1}]},
    {"supplier_id": 501, "items": "LINE", "discount_percent": "120"},
])
def test_quote_validation(make_pr, tenant_id, buyer, data):
    pr, (l1, _) = _sent_pr(make_pr, tenant_id, buyer)
    if data.get("items") == "LINE":
        data = dict(data, items=[{"line_id": l1, "unit_price": 1, "discount_percent": "120"}])
    with pytest.raises(ValidationError):
        prs.add_quote(tenant_id, pr.id, data, actor=buyer)


def test_quotes_locked_while_draft_and_after_completion(make_pr, tenant_id, buyer):
    pr = make_pr(lines=1)
    with pytest.raises(StatusLockedError):
        prs.add_quote(tenant_id, pr.id, {"supplier_id": 501}, actor=buyer)

    prs.send_for_quotes(tenant_id, pr.id, actor=buyer)
    quote = prs.add_quote(tenant_id, pr.id, {"supplier_id": 501}, actor=buyer)
    prs.start_collecting(tenant_id, pr.id, actor=buyer)
    prs.select_winner(tenant_id, pr.id, 501, actor=buyer)
    prs.complete(tenant_id, pr.id, actor=buyer)

    with pytest.raises(StatusLockedError):
        prs.update_quote(tenant_id, quote.id, {"notes": "late"}, actor=buyer)


def test_update_quote_replaces_items_and_recomputes(make_pr, tenant_id, buyer):
    pr, (l1, l2) = _sent_pr(make_pr, tenant_id, buyer)
    quote = prs.add_quote(tenant_id, pr.id, {
        "supplier_id": 501, "items": [{"line_id": l1, "quantity": 1, "unit_price": 10}],
    }, actor=buyer)

    updated = prs.update_quote(tenant_id, quote.id, {
        "delivery_days": 14,
        "items": [{"line_id": l2, "quantity": 2, "unit_price": 30}],
    }, actor=buyer)

    assert updated.delivery_days == 14
    assert [i.line_id for i in updated.items] == [l2]
    assert updated.total_amount == Decimal("60.00")
    entry = AuditEntry.query.filter_by(action="purchase_request.update_quote").one()
    assert json.loads(entry.new_value) == {"delivery_days": 14, "total_amount": "60.00"}


def test_selected_quote_cannot_be_removed(make_pr, tenant_id, buyer):
    pr, (l1, _) = _sent_pr(make_pr, tenant_id, buyer)
    winner = prs.add_quote(tenant_id, pr.id, {
        "supplier_id": 501, "items": [{"line_id": l1, "unit_price": 1}],
    }, actor=buyer)
    loser = prs.add_quote(tenant_id, pr.id, {
        "supplier_id": 502, "items": [{"line_id": l1, "unit_price": 2}],
    }, actor=buyer)
    prs.start_collecting(tenant_id, pr.id, actor=buyer)
    prs.select_winner(tenant_id, pr.id, 501, actor=buyer)

    with pytest.raises(DeletionNotAllowedError):
        prs.remove_quote(tenant_id, winner.id, actor=buyer)
    prs.remove_quote(tenant_id, loser.id, actor=buyer)
    assert [q.supplier_id for q in prs.get_purchase_request(tenant_id, pr.id).active_quotes] == [501]


def test_totals_by_supplier_keeps_lowest(make_pr, tenant_id, buyer):
    pr, (l1, _) = _sent_pr(make_pr, tenant_id, buyer)
    for supplier_id, price in [(501, 5), (501, 3), (502, 4)]:
        prs.add_quote(tenant_id, pr.id, {
            "supplier_id": supplier_id, "items": [{"line_id": l1, "quantity": 1, "unit_price": price}],
        }, actor=buyer)
    assert prs.totals_by_supplier(tenant_id, pr.id) == {501: Decimal("3.00"), 502: Decimal("4.00")}


def test_to_dict_includes_children(make_pr, tenant_id, buyer):
    pr, (l1, _) = _sent_pr(make_pr, tenant_id, buyer)
    prs.add_quote(tenant_id, pr.id, {
        "supplier_id": 501, "items": [{"line_id": l1, "quantity": 1, "unit_price": 7}],
    }, actor=buyer)
    d = prs.get_purchase_request(tenant_id, pr.id).to_dict(include_children=True)
    assert d["status"] == "sent"
    assert d["allowed_transitions"] == ["collecting", "canceled"]
    assert len(d["lines"]) == 2
    assert d["quotes"][0]["items"][0]["line_total"] == "7.00"
