# config/validation.py

"""
Startup validation of environment variables for the chambers importer.
"""

import os
import sys
from typing import List, Tuple


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Only production is checked; development and testing rely on defaults.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in ("your-secret-key", "your_secret_key"):
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    if os.environ.get("IMPORTER_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when IMPORTER_WORKER_ENABLED=true")

    for name in ("RECONCILE_CLIENT_THRESHOLD", "RECONCILE_FEE_EARNER_THRESHOLD"):
        raw = os.environ.get(name)
        if raw is None:
            continue
        try:
            value = float(raw)
        except ValueError:
            errors.append(f"{name} must be a number between 0 and 1")
            continue
        if not 0.0 <= value <= 1.0:
            errors.append(f"{name} must be a number between 0 and 1")

    scorer = os.environ.get("RECONCILE_SCORER")
    if scorer and scorer.strip().lower() not in ("token_sort", "trigram"):
        errors.append("RECONCILE_SCORER must be 'token_sort' or 'trigram'")

    return len(errors) == 0, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        sys.exit(1)
