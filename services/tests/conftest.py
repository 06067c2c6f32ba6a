"""
Top-level test configuration for flowdeck.
"""

import os
import uuid

import pytest

# Ensure test-friendly defaults
os.environ.setdefault("FLOWDECK_JSON_LOGS", "false")
os.environ.setdefault("FLOWDECK_LOG_LEVEL", "DEBUG")
os.environ.setdefault("FLOWDECK_SYNC__ENABLED", "false")
os.environ.setdefault("FLOWDECK_ENCRYPTION_KEY", "")

from flowdeck.db.models import Instance, utc_now  # noqa: E402


def make_instance(**overrides) -> Instance:
    fields = {
        "id": uuid.uuid4(),
        "name": "prod",
        "ssh_host": "n8n.example.com",
        "ssh_port": 22,
        "ssh_user": "deploy",
        "ssh_private_key_path": "/keys/id_ed25519",
        "db_host": "127.0.0.1",
        "db_port": 5432,
        "db_name": "n8n",
        "db_user": "n8n",
        "db_password_encrypted": "secret",
        "base_url": "http://localhost:5678",
        "created_at": utc_now(),
        "updated_at": utc_now(),
    }
    fields.update(overrides)
    return Instance(**fields)


@pytest.fixture
def instance_factory():
    return make_instance


@pytest.fixture
def instance() -> Instance:
    return make_instance()
