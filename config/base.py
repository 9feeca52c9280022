# config/base.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default, *, minimum=None, maximum=None):
    if value is None or str(value).strip() == "":
        return default
    try:
        number = float(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    if maximum is not None and number > maximum:
        return default
    return number


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying chambers.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer feature flags and worker wiring
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")

    # LEX file limits
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 50, minimum=1)
    IMPORTER_MAX_ROWS = _coerce_int(os.environ.get("IMPORTER_MAX_ROWS"), 50_000, minimum=1)

    # Batch coordinator
    IMPORTER_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_BATCH_SIZE"), 500, minimum=1)
    IMPORTER_MAX_CONCURRENT_BATCHES = _coerce_int(
        os.environ.get("IMPORTER_MAX_CONCURRENT_BATCHES"), 3, minimum=1
    )
    IMPORTER_RETRY_ATTEMPTS = _coerce_int(os.environ.get("IMPORTER_RETRY_ATTEMPTS"), 3, minimum=1)
    IMPORTER_RETRY_BASE_DELAY = _coerce_float(os.environ.get("IMPORTER_RETRY_BASE_DELAY"), 1.0, minimum=0.0)
    IMPORTER_RETRY_MULTIPLIER = _coerce_float(os.environ.get("IMPORTER_RETRY_MULTIPLIER"), 2.0, minimum=1.0)

    # Progress tracker
    IMPORTER_PROGRESS_PERSIST_SECONDS = _coerce_float(
        os.environ.get("IMPORTER_PROGRESS_PERSIST_SECONDS"), 2.0, minimum=0.0
    )
    IMPORTER_PROGRESS_RETENTION_HOURS = _coerce_int(
        os.environ.get("IMPORTER_PROGRESS_RETENTION_HOURS"), 24, minimum=1
    )
    IMPORTER_PROGRESS_SWEEP_MINUTES = _coerce_float(
        os.environ.get("IMPORTER_PROGRESS_SWEEP_MINUTES"), 15.0, minimum=0.0
    )
    IMPORTER_DIAGNOSTIC_CAPACITY = _coerce_int(os.environ.get("IMPORTER_DIAGNOSTIC_CAPACITY"), 100, minimum=1)

    # Entity reconciliation
    RECONCILE_CLIENT_THRESHOLD = _coerce_float(
        os.environ.get("RECONCILE_CLIENT_THRESHOLD"), 0.90, minimum=0.0, maximum=1.0
    )
    RECONCILE_FEE_EARNER_THRESHOLD = _coerce_float(
        os.environ.get("RECONCILE_FEE_EARNER_THRESHOLD"), 0.80, minimum=0.0, maximum=1.0
    )
    RECONCILE_SCORER = os.environ.get("RECONCILE_SCORER", "token_sort").strip().lower()

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes on Windows
    db_path = os.path.join(instance_path, "chambers_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    IMPORTER_RETRY_BASE_DELAY = 0.0
    IMPORTER_PROGRESS_PERSIST_SECONDS = 0.0
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True
