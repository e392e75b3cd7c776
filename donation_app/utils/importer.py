"""
Config accessors for the payment importer.
"""

from __future__ import annotations

from typing import Tuple

from flask import current_app

ALLOCATION_POLICIES = ("full", "split")
DEFAULT_ALLOCATION_POLICY = "full"
DEFAULT_PROJECT_TITLE = "General Donation"


def _config(app=None):
    return (app or current_app).config


def is_importer_enabled(app=None) -> bool:
    return bool(_config(app).get("IMPORTER_ENABLED", False))


def get_importer_adapters(app=None) -> Tuple[str, ...]:
    return tuple(_config(app).get("IMPORTER_ADAPTERS", ()))


def get_allocation_policy(app=None) -> str:
    """Multi-child amount allocation policy; unknown values raise ``ValueError``."""

    policy = str(_config(app).get("IMPORTER_MULTI_CHILD_ALLOCATION") or DEFAULT_ALLOCATION_POLICY).strip().lower()
    if policy not in ALLOCATION_POLICIES:
        raise ValueError(
            f"IMPORTER_MULTI_CHILD_ALLOCATION must be one of {', '.join(ALLOCATION_POLICIES)}; got '{policy}'."
        )
    return policy


def get_default_project_title(app=None) -> str:
    title = _config(app).get("IMPORTER_DEFAULT_PROJECT_TITLE") or DEFAULT_PROJECT_TITLE
    return str(title).strip() or DEFAULT_PROJECT_TITLE
