"""Prometheus metrics server for kryten-rewards.

Subclasses BaseMetricsServer from kryten-py to expose
ledger-specific metrics and health details.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from kryten import BaseMetricsServer

from .errors import StorageUnavailable

if TYPE_CHECKING:
    from .main import RewardsApp


class RewardsMetricsServer(BaseMetricsServer):
    """Rewards-specific Prometheus metrics endpoint."""

    def __init__(self, app: RewardsApp, port: int = 28290) -> None:
        super().__init__(
            service_name="rewards",
            port=port,
            client=app.client,
            logger=app.logger,
        )
        self._app = app

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect rewards-specific Prometheus metrics."""
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"rewards_commands_processed_total {self._app.commands_processed}")
        lines.append(f"rewards_ledger_commits_total {self._app.ledger.commits_total}")
        lines.append(f"rewards_ledger_conflicts_total {self._app.ledger.conflicts_total}")
        lines.append(f"rewards_actions_queued_total {self._app.service.actions_queued_total}")
        lines.append(f"rewards_actions_replayed_total {self._app.service.actions_replayed_total}")

        # ── Gauges ───────────────────────────────────────────
        lines.append(f"rewards_online {int(self._app.service.is_online())}")
        lines.append(f"rewards_offline_queue_size {await self._app.offline_queue.size()}")
        lines.append(f"rewards_config_cache_entries {len(self._app.cache)}")

        try:
            accounts = await self._app.db.get_account_count()
            pending = await self._app.db.get_pending_withdrawal_count()
        except StorageUnavailable:
            self._app.logger.debug("Skipping store gauges: account store unreachable")
        else:
            lines.append(f"rewards_total_accounts {accounts}")
            lines.append(f"rewards_pending_withdrawals {pending}")

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        online = self._app.service.is_online()
        return {
            "database": "connected" if online else "unreachable",
            "offline_queue": await self._app.offline_queue.size(),
            "remote_config": bool(self._app.config.config_provider.base_url),
        }
