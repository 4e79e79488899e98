"""
Integration tests for the Flask endpoints served alongside the Dash app, and the
Dash layout wiring.
"""

import pytest
from dash.development.base_component import Component

from app import build_csp, create_app
from piletracker.config import AppConfig
from piletracker.database import DatabaseError, PileDatabase
from piletracker.layout import build_field_entry_page


@pytest.fixture
def client(db):
    dash_app = create_app(AppConfig(database_path=":memory:", account_type="epc"), db=db)
    return dash_app.server.test_client()


@pytest.mark.integration
class TestHealthEndpoints:
    def test_health_reports_row_counts(self, client, db, project_id):
        response = client.get("/__/health")
        assert response.status_code == 200
        payload = response.get_json()
        assert payload["status"] == "ok"
        assert payload["account_type"] == "epc"
        assert payload["row_counts"]["projects"] == 1
        assert payload["row_counts"]["piles"] == 0
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_health_degraded_when_counts_fail(self, client, monkeypatch):
        def _broken(self):
            raise DatabaseError("database is locked")

        monkeypatch.setattr(PileDatabase, "table_counts", _broken)
        response = client.get("/__/health")
        assert response.status_code == 503
        assert response.get_json()["status"] == "degraded"

    def test_ready(self, client, monkeypatch):
        assert client.get("/__/ready").status_code == 200
        monkeypatch.setattr(PileDatabase, "ping", lambda self: False)
        response = client.get("/__/ready")
        assert response.status_code == 503
        assert response.get_json() == {"status": "unavailable"}


@pytest.mark.unit
class TestConfig:
    def test_csp_merges_extra_sources(self):
        config = AppConfig(csp_img_src=("https://tiles.example.com",), csp_connect_src=("'self'",))
        csp = build_csp(config)
        assert csp["img-src"] == "'self' data: https://tiles.example.com"
        assert csp["connect-src"] == "'self'"

    def test_owner_accounts_cannot_edit(self):
        assert not AppConfig(account_type="owner").can_edit
        assert AppConfig(account_type="epc").can_edit

    def test_validate_rejects_bad_values(self, tmp_path):
        with pytest.raises(ValueError):
            AppConfig(account_type="admin").validate()
        with pytest.raises(ValueError):
            AppConfig(import_batch_size=0).validate()
        with pytest.raises(ValueError):
            AppConfig(database_path="/elsewhere/piles.duckdb", allowed_data_root=tmp_path).validate()
        AppConfig(database_path=str(tmp_path / "piles.duckdb"), allowed_data_root=tmp_path).validate()


def _walk(root):
    stack = [root]
    while stack:
        node = stack.pop()
        if isinstance(node, (list, tuple)):
            stack.extend(node)
        elif isinstance(node, Component):
            yield node
            stack.append(getattr(node, "children", None))


def _component_ids(root) -> list[str]:
    return [node.id for node in _walk(root) if getattr(node, "id", None)]


def _output_ids(key: str) -> list[str]:
    # "..a.prop...b.prop@hash.." for multi-output callbacks
    return [part.split("@")[0].rsplit(".", 1)[0] for part in key.strip(".").split("...")]


@pytest.mark.unit
class TestLayoutWiring:
    """Every callback dependency resolves to a component in the layout."""

    @pytest.fixture
    def dash_app(self, db):
        return create_app(AppConfig(database_path=":memory:", account_type="epc"), db=db)

    def test_component_ids_unique(self, dash_app):
        ids = _component_ids(dash_app.layout) + _component_ids(build_field_entry_page(None))
        assert len(ids) == len(set(ids))

    def test_callback_ids_exist(self, dash_app):
        known = set(_component_ids(dash_app.layout)) | set(_component_ids(build_field_entry_page(None)))
        referenced = set()
        for key, callback in dash_app.callback_map.items():
            referenced.update(_output_ids(key))
            referenced.update(dep["id"] for dep in callback["inputs"])
            referenced.update(dep["id"] for dep in callback.get("state", []))
        assert referenced - known == set()

    def test_settings_hidden_for_owner(self, db):
        dash_app = create_app(AppConfig(database_path=":memory:", account_type="owner"), db=db)
        button = next(node for node in _walk(dash_app.layout) if getattr(node, "id", None) == "btn-open-settings")
        assert button.style == {"display": "none"}
