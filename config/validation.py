# config/validation.py

"""
Environment variable validation.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

_ALLOCATION_POLICIES = ("full", "split")


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    allocation = os.environ.get("IMPORTER_MULTI_CHILD_ALLOCATION", "full").strip().lower()
    if allocation not in _ALLOCATION_POLICIES:
        errors.append(
            f"IMPORTER_MULTI_CHILD_ALLOCATION must be one of {', '.join(_ALLOCATION_POLICIES)} (got '{allocation}')."
        )

    if flask_env != "production":
        return len(errors) == 0, errors

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in ("your-secret-key", "your_secret_key"):
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    if os.environ.get("IMPORTER_WORKER_ENABLED", "false").lower() == "true" and not os.environ.get(
        "CELERY_BROKER_URL"
    ):
        errors.append("CELERY_BROKER_URL is required in production when IMPORTER_WORKER_ENABLED=true.")

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
        print("\nPlease check your .env file or environment variables.", file=sys.stderr)
        sys.exit(1)
