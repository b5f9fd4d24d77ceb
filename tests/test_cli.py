"""Tests for the kryten-rewards command-line entry point."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from kryten_rewards.__main__ import main_async, parse_args, resolve_config_path
from tests.conftest import make_config_dict


class TestArgs:

    def test_defaults(self):
        args = parse_args([])
        assert args.config is None
        assert args.log_level == "INFO"
        assert args.validate_config is False

    def test_explicit_path_wins(self, tmp_path: Path):
        assert resolve_config_path(str(tmp_path / "x.yaml")) == str(tmp_path / "x.yaml")

    def test_cwd_fallback(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config.yaml").write_text("{}")
        assert resolve_config_path(None) in ("/etc/kryten/kryten-rewards/config.yaml", "./config.yaml")


class TestValidateConfig:

    async def test_valid(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(make_config_dict()))
        await main_async(["--config", str(path), "--validate-config"])

    async def test_invalid(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(make_config_dict(ledger={"daily_earn_cap": "lots"})))
        with pytest.raises(SystemExit):
            await main_async(["--config", str(path), "--validate-config"])

    async def test_missing_config(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        if Path("/etc/kryten/kryten-rewards/config.yaml").exists():
            pytest.skip("system config present")
        with pytest.raises(SystemExit):
            await main_async([])
