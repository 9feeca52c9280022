# conftest.py

import os
import tempfile
import uuid

import pytest
from flask import g

# Set testing environment BEFORE importing app so TestingConfig is selected
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from chambers_app.models import User, UserRole, db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create a test Flask application backed by an isolated SQLite file."""

    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
    try:
        flask_app = create_app(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "MONITORING_ENABLED": False,
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": True,
                "LOG_LEVEL": "DEBUG",
                "IMPORTER_ENABLED": False,
                "IMPORTER_WORKER_ENABLED": False,
                "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
                "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
            }
        )
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        for suffix in ("", "-wal", "-shm"):
            try:
                if os.path.exists(temp_db + suffix):
                    os.unlink(temp_db + suffix)
            except OSError:
                pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def user_factory(app):
    counter = {"value": 0}

    def _factory(*, role: UserRole = UserRole.CLERK, username: str | None = None) -> User:
        counter["value"] += 1
        name = username or f"{role.value}{counter['value']}"
        user = User(username=name, email=f"{name}@chambers.example", role=role)
        user.set_password("testpass123")
        db.session.add(user)
        db.session.commit()
        return user

    return _factory


@pytest.fixture
def login(client):
    """Log ``user`` into the test client session."""

    def _login(user: User) -> None:
        # Requests reuse the test app context, so drop the cached user from ``g``.
        g.pop("_login_user", None)
        with client.session_transaction() as session:
            session["_user_id"] = str(user.id)
            session["_fresh"] = True

    return _login
