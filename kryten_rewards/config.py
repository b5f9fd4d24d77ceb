"""Configuration system for kryten-rewards.

Two kinds of models live here:

* service settings (database paths, ledger limits, rate-limit rules, cache
  TTL, ...) loaded once from YAML into ``RewardsConfig``;
* configuration *snapshots* (earning rates, withdrawal rules, app settings,
  tasks) that normally come from the remote configuration provider. They are
  frozen and replaced wholesale on change; the YAML copies are the defaults
  used when the provider is not configured or unreachable.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from kryten import KrytenConfig
from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════
#  Configuration snapshots
# ═══════════════════════════════════════════════════════════════

class RewardRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: int = 5
    max: int = 10


class EarningRates(BaseModel):
    model_config = ConfigDict(frozen=True)

    checkin_rewards: dict[str, int] = Field(
        default={
            "day1": 10, "day2": 10, "day3": 10, "day4": 10,
            "day5": 10, "day6": 10, "day7": 20,
        },
        description="Streak day key ('day1'..'day7') → coin reward",
    )
    spin_rewards: list[int] = Field(
        default=[5, 10, 15, 20, 10, 5],
        min_length=1,
        description="Wheel segments; weights are implied by repetition",
    )
    video_rewards: RewardRange = Field(default_factory=RewardRange)
    ad_rewards: RewardRange = Field(default_factory=RewardRange)
    referral_bonus: int = 50
    invitee_bonus: int = 10
    coin_to_bdt_rate: float = 20

    def checkin_reward(self, streak: int) -> int:
        day = min(streak, 7)
        return self.checkin_rewards.get(f"day{day}", 20 if day == 7 else 10)


class WithdrawalMethod(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    enabled: bool = True


class WithdrawalSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_amount: float = 50
    max_amount: float = 10000
    daily_limit: float = 10000
    methods: list[WithdrawalMethod] = Field(default_factory=lambda: [
        WithdrawalMethod(id="bkash", name="bKash", enabled=True),
        WithdrawalMethod(id="nagad", name="Nagad", enabled=True),
        WithdrawalMethod(id="rocket", name="Rocket", enabled=False),
    ])
    processing_time: str = "24-48 hours"
    status: str = Field(default="active", description="'active' or 'disabled'")
    account_pattern: str = r"^\d{11}$"

    def find_method(self, method_id: str) -> WithdrawalMethod | None:
        for method in self.methods:
            if method.id == method_id:
                return method
        return None


class AppSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    app_name: str = "CoinFlow"
    app_version: str = "2.0.0"
    max_daily_spins: int = 2


class TaskDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    reward: int
    status: str = "active"


# ═══════════════════════════════════════════════════════════════
#  Service settings
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "rewards.db"


class DeviceConfig(BaseModel):
    """Local state owned by this process: rate windows and the offline queue."""
    state_path: str = "rewards_device.db"


class LedgerConfig(BaseModel):
    daily_earn_cap: float = 50
    max_single_award: int = 1000
    commit_max_attempts: int = 5
    backoff_base_seconds: float = 0.05
    backoff_max_seconds: float = 1.0


class MilestoneConfig(BaseModel):
    task_threshold: int = 50
    bonus_min: int = 10
    bonus_max: int = 50


class CalendarConfig(BaseModel):
    timezone: str = Field(default="UTC", description="IANA zone defining calendar-day boundaries")


class RateLimitRule(BaseModel):
    limit: int = Field(ge=0, description="0 rejects every request")
    window_seconds: float = Field(gt=0)


class RateLimitsConfig(BaseModel):
    rules: dict[str, RateLimitRule] = Field(default_factory=lambda: {
        "checkin": RateLimitRule(limit=1, window_seconds=86400),
        "spin": RateLimitRule(limit=2, window_seconds=86400),
        "withdrawal": RateLimitRule(limit=3, window_seconds=86400),
        "signup": RateLimitRule(limit=3, window_seconds=86400),
    })


class CacheConfig(BaseModel):
    ttl_seconds: float = 300
    sweep_interval_seconds: float = 60


class ConnectivityConfig(BaseModel):
    check_interval_seconds: float = 15


class ConfigProviderConfig(BaseModel):
    base_url: str = ""
    api_token: str = ""
    timeout_seconds: float = 10.0


class CommandsConfig(BaseModel):
    subject: str = "kryten.rewards.command"
    config_changed_subject: str = "kryten.rewards.config.changed"


# ═══════════════════════════════════════════════════════════════
#  Top-Level Rewards Config
# ═══════════════════════════════════════════════════════════════

class RewardsConfig(KrytenConfig):
    """Full rewards config — extends KrytenConfig with the ledger sub-models."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    milestone: MilestoneConfig = Field(default_factory=MilestoneConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    rate_limits: RateLimitsConfig = Field(default_factory=RateLimitsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    config_provider: ConfigProviderConfig = Field(default_factory=ConfigProviderConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)

    # Snapshot defaults
    earning_rates: EarningRates = Field(default_factory=EarningRates)
    withdrawal: WithdrawalSettings = Field(default_factory=WithdrawalSettings)
    app: AppSettings = Field(default_factory=AppSettings)
    tasks: list[TaskDefinition] = Field(default_factory=list)
    # NOTE: metrics is inherited from KrytenConfig (kryten.config.MetricsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> RewardsConfig:
    """Load and validate YAML config file into RewardsConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return RewardsConfig(**raw)
