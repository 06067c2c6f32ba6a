"""Tests for the instance store and tunnel release on change."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from flowdeck.services import encryption_service
from flowdeck.services.instance_service import (
    create_instance,
    delete_instance,
    update_instance,
)


@pytest.fixture(autouse=True)
def no_encryption(monkeypatch):
    monkeypatch.setattr(encryption_service, "_fernet", None)


class TestCreateInstance:
    async def test_create_stores_password_and_ignores_unknown_fields(self):
        db = MagicMock()
        db.flush = AsyncMock()

        instance = await create_instance(
            db,
            {
                "name": "staging",
                "ssh_host": "staging.example.com",
                "ssh_user": "deploy",
                "ssh_private_key_path": "/keys/staging",
                "db_name": "n8n",
                "db_user": "n8n",
                "db_password": "hunter2",
                "id": "ignored",
            },
        )

        assert instance.name == "staging"
        assert instance.db_password_encrypted == "hunter2"
        assert instance.id != "ignored"
        db.add.assert_called_once_with(instance)
        db.flush.assert_awaited_once()


def _ordered_db(events: list[str]) -> AsyncMock:
    db = AsyncMock()
    db.commit.side_effect = lambda: events.append("commit")
    return db


class TestUpdateInstance:
    @patch("flowdeck.services.instance_service.release_tunnel", new_callable=AsyncMock)
    @patch("flowdeck.services.instance_service.get_instance", new_callable=AsyncMock)
    async def test_update_releases_tunnel(self, mock_get, mock_release, instance):
        mock_get.return_value = instance

        updated = await update_instance(
            AsyncMock(), instance.id, {"ssh_host": "new.example.com", "db_password": "changed"}
        )

        assert updated.ssh_host == "new.example.com"
        assert updated.db_password_encrypted == "changed"
        mock_release.assert_awaited_once_with(instance.id)

    @patch("flowdeck.services.instance_service.release_tunnel", new_callable=AsyncMock)
    @patch("flowdeck.services.instance_service.get_instance", new_callable=AsyncMock)
    async def test_update_commits_before_release(self, mock_get, mock_release, instance):
        events: list[str] = []
        mock_get.return_value = instance
        mock_release.side_effect = lambda instance_id: events.append("release")

        await update_instance(_ordered_db(events), instance.id, {"db_password": "rotated"})

        assert events == ["commit", "release"]

    @patch("flowdeck.services.instance_service.release_tunnel", new_callable=AsyncMock)
    @patch("flowdeck.services.instance_service.get_instance", new_callable=AsyncMock)
    async def test_update_without_password_keeps_it(self, mock_get, mock_release, instance):
        mock_get.return_value = instance

        updated = await update_instance(AsyncMock(), instance.id, {"name": "renamed"})

        assert updated.name == "renamed"
        assert updated.db_password_encrypted == "secret"

    @patch("flowdeck.services.instance_service.release_tunnel", new_callable=AsyncMock)
    @patch("flowdeck.services.instance_service.get_instance", new_callable=AsyncMock)
    async def test_update_missing_returns_none(self, mock_get, mock_release, instance):
        mock_get.return_value = None

        assert await update_instance(AsyncMock(), instance.id, {"name": "x"}) is None
        mock_release.assert_not_awaited()


class TestDeleteInstance:
    @patch("flowdeck.services.instance_service.release_tunnel", new_callable=AsyncMock)
    @patch("flowdeck.services.instance_service.get_instance", new_callable=AsyncMock)
    async def test_delete_releases_tunnel(self, mock_get, mock_release, instance):
        mock_get.return_value = instance
        db = AsyncMock()

        assert await delete_instance(db, instance.id) is True

        db.delete.assert_awaited_once_with(instance)
        mock_release.assert_awaited_once_with(instance.id)

    @patch("flowdeck.services.instance_service.release_tunnel", new_callable=AsyncMock)
    @patch("flowdeck.services.instance_service.get_instance", new_callable=AsyncMock)
    async def test_delete_commits_before_release(self, mock_get, mock_release, instance):
        events: list[str] = []
        mock_get.return_value = instance
        mock_release.side_effect = lambda instance_id: events.append("release")

        await delete_instance(_ordered_db(events), instance.id)

        assert events == ["commit", "release"]

    @patch("flowdeck.services.instance_service.release_tunnel", new_callable=AsyncMock)
    @patch("flowdeck.services.instance_service.get_instance", new_callable=AsyncMock)
    async def test_delete_missing_returns_false(self, mock_get, mock_release, instance):
        mock_get.return_value = None

        assert await delete_instance(AsyncMock(), instance.id) is False
        mock_release.assert_not_awaited()
