import json
import logging

import pytest
from sqlalchemy import text

from app import create_app
from chambers_app.models import User, UserRole, db
from chambers_app.utils.logging_config import JSONFormatter
from chambers_app.utils.permissions import can_access_job, has_permission, is_elevated
from config.validation import validate_environment


class TestAppFactory:
    """Application factory wiring"""

    def test_app_creation(self, app):
        assert app.config["TESTING"] is True
        assert app.extensions.get("login_manager") is not None

    def test_user_loader(self, app, user_factory):
        user = user_factory()
        login_manager = app.extensions["login_manager"]
        assert login_manager._user_callback(str(user.id)) == user
        assert login_manager._user_callback("not-a-number") is None

    def test_not_found_is_json(self, client):
        response = client.get("/nonexistent-route")
        assert response.status_code == 404
        assert response.get_json() == {"error": "Not found."}

    def test_sqlite_pragmas_applied(self, app):
        with db.engine.connect() as connection:
            assert connection.execute(text("PRAGMA foreign_keys")).scalar() == 1
            assert connection.execute(text("PRAGMA journal_mode")).scalar() == "wal"

    def test_metrics_endpoint_when_monitoring_enabled(self, tmp_path):
        monitored = create_app(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'metrics.db'}",
                "MONITORING_ENABLED": True,
                "IMPORTER_ENABLED": False,
            }
        )
        response = monitored.test_client().get("/metrics")
        assert response.status_code == 200
        assert response.mimetype == "text/plain"


class TestPermissions:
    """Role permissions and job ownership"""

    def test_clerk_permissions(self, user_factory):
        clerk = user_factory(role=UserRole.CLERK)
        assert has_permission(clerk, "run_imports")
        assert has_permission(clerk, "export_enquiries")
        assert not is_elevated(clerk)

    def test_barrister_is_read_only(self, user_factory):
        barrister = user_factory(role=UserRole.BARRISTER)
        assert has_permission(barrister, "view_imports")
        assert not has_permission(barrister, "run_imports")

    def test_admin_has_everything(self, user_factory):
        admin = user_factory(role=UserRole.ADMIN)
        assert has_permission(admin, "run_imports")
        assert can_access_job(admin, owner_id=None)

    def test_job_access_requires_ownership(self, user_factory):
        owner = user_factory()
        other = user_factory()
        assert can_access_job(owner, owner.id)
        assert not can_access_job(other, owner.id)
        assert not can_access_job(None, owner.id)

    def test_password_round_trip(self, user_factory):
        user = user_factory()
        assert user.check_password("testpass123")
        assert not user.check_password("wrong")
        assert not User(username="x", email="x@example.com").check_password("anything")


class TestEnvironmentValidation:
    """Production start-up checks"""

    def test_non_production_is_not_checked(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)
        assert validate_environment("development") == (True, [])

    def test_production_requires_secret_and_database(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "your-secret-key")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        is_valid, errors = validate_environment("production")
        assert not is_valid
        assert any("SECRET_KEY" in error for error in errors)
        assert any("DATABASE_URL" in error for error in errors)

    @pytest.mark.parametrize(
        "name,value",
        [("RECONCILE_CLIENT_THRESHOLD", "1.5"), ("RECONCILE_FEE_EARNER_THRESHOLD", "high"), ("RECONCILE_SCORER", "soundex")],
    )
    def test_production_rejects_bad_reconcile_settings(self, monkeypatch, name, value):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://chambers@localhost/chambers")
        monkeypatch.setenv(name, value)
        is_valid, errors = validate_environment("production")
        assert not is_valid
        assert any(name in error for error in errors)


class TestJSONFormatter:
    def test_extra_fields_are_carried(self):
        record = logging.LogRecord("chambers_app.importer", logging.INFO, __file__, 1, "job %s done", (7,), None)
        record.importer_job_id = 7
        payload = json.loads(JSONFormatter(app_name="Chambers").format(record))
        assert payload["msg"] == "job 7 done"
        assert payload["importer_job_id"] == 7
        assert payload["app"] == "Chambers"
        assert payload["level"] == "INFO"
