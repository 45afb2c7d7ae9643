"""Shared test fixtures for the box_migrator test suite."""

import pytest
import yaml


@pytest.fixture()
def sample_users():
    """Return a list of sample Box enterprise user dicts."""
    return [
        {
            "type": "user",
            "id": "1001",
            "name": "Alice Smith",
            "login": "alice@example.edu",
            "status": "active",
        },
        {
            "type": "user",
            "id": "1002",
            "name": "Alice Smithson",
            "login": "alice@example.edu.other",
            "status": "active",
        },
        {
            "type": "user",
            "id": "1003",
            "name": "Bob Jones",
            "login": "bob@example.edu",
            "status": "inactive",
        },
    ]


@pytest.fixture()
def mock_config():
    """Return a raw config dict with credentials and defaults populated."""
    return {
        "box": {
            "client_id": "client-id",
            "client_secret": "client-secret",
            "enterprise_id": "555",
            "managed_user_id": "9000",
        },
        "retry": {
            "bootstrap_max_attempts": 5,
            "item_max_attempts": 3,
            "activity_max_attempts": 3,
            "transient_backoff_seconds": 2,
            "rate_limit_base_seconds": 2,
        },
        "max_workers": 4,
        "show_progress": False,
        "job_store": {"path": "box_migrator.db"},
        "notifications": {
            "from_address": "noreply@example.edu",
            "operator_addresses": ["ops@example.edu"],
        },
    }


@pytest.fixture()
def config_file(tmp_path, mock_config):
    """Write ``mock_config`` to a YAML file and return its path."""
    mock_config["job_store"]["path"] = str(tmp_path / "jobs.db")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(mock_config))
    return path
