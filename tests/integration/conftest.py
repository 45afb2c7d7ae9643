"""Integration test configuration.

These tests require a Box application and are skipped by default. Set
BOX_CLIENT_ID, BOX_CLIENT_SECRET and BOX_ENTERPRISE_ID to a Client
Credentials Grant app authorized in a test enterprise to enable them.
"""

import os

import pytest

skip_no_creds = pytest.mark.skipif(
    not (
        os.environ.get("BOX_CLIENT_ID")
        and os.environ.get("BOX_CLIENT_SECRET")
        and os.environ.get("BOX_ENTERPRISE_ID")
    ),
    reason="Integration tests require BOX_CLIENT_ID, BOX_CLIENT_SECRET and BOX_ENTERPRISE_ID env vars",
)


def pytest_collection_modifyitems(config, items):
    here = os.path.dirname(__file__)
    for item in items:
        if str(item.fspath).startswith(here):
            item.add_marker(skip_no_creds)
