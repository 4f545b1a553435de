"""
Shared pytest fixtures for the fabstock test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - tenant_id / other_tenant_id: tenant keys
    - actor: default operator performing mutations
    - make_profile / make_sheet / make_pr: committed factories
"""

import pytest

from fabstock import create_app
from fabstock.core.actor import Actor
from fabstock.models import db as _db
from fabstock.services import purchase_request_service, stock_service

_seq = iter(range(1, 99999))


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Identity fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def tenant_id():
    return "acme"


@pytest.fixture()
def other_tenant_id():
    return "globex"


@pytest.fixture()
def actor():
    return Actor(user_id="u-100", user_name="Ada Operator", role="operator",
                 correlation_id="corr-1")


@pytest.fixture()
def buyer():
    return Actor(user_id="u-200", user_name="Ben Buyer", role="purchasing")


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_profile(tenant_id, actor):
    """Receive a profile lot through the service (commits)."""

    def _make(lot_id=None, length_mm=12000, weight_kg="1000", tenant=None, **kw):
        data = {
            "lot_id": lot_id or f"A{next(_seq)}",
            "length_mm": length_mm,
            "weight_kg": weight_kg,
            "grade": kw.pop("grade", "S355"),
            "profile_type": kw.pop("profile_type", "HEA"),
            "dimension": kw.pop("dimension", "200x200"),
        }
        data.update(kw)
        return stock_service.create_profile(tenant or tenant_id, data, actor=actor)

    return _make


@pytest.fixture()
def make_sheet(tenant_id, actor):
    """Receive a sheet through the service (commits)."""

    def _make(sheet_id=None, length_mm=3000, width_mm=1500, thickness_mm=10, tenant=None, **kw):
        data = {
            "sheet_id": sheet_id or f"SH-{next(_seq)}",
            "grade": kw.pop("grade", "S235"),
            "length_mm": length_mm,
            "width_mm": width_mm,
            "thickness_mm": thickness_mm,
            "weight_kg": kw.pop("weight_kg", "353.25"),
        }
        data.update(kw)
        return stock_service.create_sheet(tenant or tenant_id, data, actor=actor)

    return _make


@pytest.fixture()
def make_pr(tenant_id, buyer):
    """Create a draft purchase request, optionally with lines (commits)."""

    def _make(title="Steel for hall B", lines=0, tenant=None, **kw):
        tid = tenant or tenant_id
        pr = purchase_request_service.create_purchase_request(
            tid, {"title": title, **kw}, actor=buyer,
        )
        for i in range(lines):
            purchase_request_service.add_line(
                tid, pr.id,
                {"material_type": "profile", "grade": "S355", "profile_type": "IPE",
                 "length_mm": 6000, "quantity": 10 + i, "unit_of_measure": "pcs"},
                actor=buyer,
            )
        return pr

    return _make
