"""Tests for the RewardsApp orchestrator."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml

from kryten_rewards.config import RewardsConfig
from kryten_rewards.main import RewardsApp, _decode_notification
from tests.conftest import make_config_dict


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    cfg = make_config_dict(
        database={"path": str(tmp_path / "rewards.db")},
        device={"state_path": str(tmp_path / "device.db")},
    )
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg))
    return path


class TestDecodeNotification:

    def test_dict_passthrough(self):
        assert _decode_notification({"key": "tasks:active"}) == {"key": "tasks:active"}

    def test_bytes_payload(self):
        msg = SimpleNamespace(data=json.dumps({"key": "settings:app"}).encode())
        assert _decode_notification(msg) == {"key": "settings:app"}

    def test_empty_and_non_object(self):
        assert _decode_notification(SimpleNamespace(data=b"")) == {}
        assert _decode_notification(SimpleNamespace(data="[1, 2]")) == {}


class TestRewardsApp:

    async def test_build_wires_components(self, config_file: Path):
        app = RewardsApp(str(config_file))
        config = RewardsConfig(**yaml.safe_load(config_file.read_text()))
        await app.build(config)

        assert app.service.is_online() is True
        account, created = await app.service.open_account("alice")
        assert created is True
        assert await app.db.get_account_count() == 1
        assert app.remote_client.enabled is False

    async def test_config_changed_invalidates(self, config_file: Path):
        app = RewardsApp(str(config_file))
        await app.build(RewardsConfig(**yaml.safe_load(config_file.read_text())))
        app.cache.set("tasks:active", [])
        app.cache.set("settings:app", object())

        await app._handle_config_changed(SimpleNamespace(data=b'{"key": "tasks:active"}'))
        assert len(app.cache) == 1

        # Malformed payloads are logged, not raised
        await app._handle_config_changed(SimpleNamespace(data=b"not json"))
        assert len(app.cache) == 1

    async def test_start_and_stop(self, config_file: Path, mock_client: MagicMock):
        metrics = MagicMock()
        metrics.start = AsyncMock()
        metrics.stop = AsyncMock()
        with patch("kryten_rewards.main.KrytenClient", return_value=mock_client), \
                patch("kryten_rewards.main.RewardsMetricsServer", return_value=metrics):
            app = RewardsApp(str(config_file))
            await app.start()

        mock_client.connect.assert_awaited_once()
        mock_client.subscribe.assert_awaited_once()
        assert mock_client.subscribe.call_args[0][0] == app.config.commands.config_changed_subject
        mock_client.subscribe_request_reply.assert_awaited_once()
        mock_client.run.assert_awaited_once()
        metrics.start.assert_awaited_once()

        await app.stop()
        mock_client.stop.assert_awaited_once()
        metrics.stop.assert_awaited_once()

    async def test_stop_before_start(self, config_file: Path):
        app = RewardsApp(str(config_file))
        await app.stop()
        assert app.uptime_seconds == 0.0
