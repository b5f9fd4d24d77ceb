"""Request-reply command handler on kryten.rewards.command.

Provides the NATS request-reply API used by the app backend and admin
tooling. Every request carries ``command`` and, for account operations,
``account_id``.
"""

from __future__ import annotations

import dataclasses
import logging
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from . import __version__
from .errors import RewardsError
from .models import QueuedResult

if TYPE_CHECKING:
    from kryten import KrytenClient

    from .main import RewardsApp


def _jsonable(value: Any) -> Any:
    """Convert result objects into plain JSON types."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        if hasattr(value, "to_dict"):
            return _jsonable(value.to_dict())
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class CommandHandler:
    """Handles request-reply commands on kryten.rewards.command."""

    def __init__(
        self,
        app: RewardsApp,
        client: KrytenClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._client = client
        self._logger = logger or logging.getLogger("rewards.command")

    async def connect(self) -> None:
        """Subscribe to request-reply on the configured command subject."""
        await self._client.subscribe_request_reply(
            self._app.config.commands.subject,
            self._handle_command,
        )

    async def _handle_command(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route a command request to the appropriate handler."""
        command = request.get("command", "")
        handler = self._HANDLER_MAP.get(command)

        if not handler:
            return {
                "service": "rewards",
                "command": command,
                "success": False,
                "error": f"Unknown command: {command}",
            }

        try:
            result = await handler(self, request)
            self._app.commands_processed += 1
            return {
                "service": "rewards",
                "command": command,
                "success": True,
                "data": _jsonable(result),
            }
        except RewardsError as e:
            self._logger.debug("Command %s rejected: %s", command, e.code)
            response = {
                "service": "rewards",
                "command": command,
                "success": False,
                "error": e.message,
                "code": e.code,
            }
            retry_after = getattr(e, "retry_after", None)
            if retry_after is not None:
                response["retry_after"] = retry_after
            return response
        except Exception as e:
            self._logger.exception("Command handler error for %s", command)
            return {
                "service": "rewards",
                "command": command,
                "success": False,
                "error": str(e),
            }

    # ══════════════════════════════════════════════════════════
    #  System
    # ══════════════════════════════════════════════════════════

    async def _handle_ping(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "version": __version__}

    async def _handle_health(self, request: dict[str, Any]) -> dict[str, Any]:
        service = self._app.service
        online = service.is_online()
        return {
            "status": "healthy" if online else "degraded",
            "database": "connected" if online else "unreachable",
            "queue_size": await self._app.offline_queue.size(),
            "uptime_seconds": self._app.uptime_seconds,
        }

    # ══════════════════════════════════════════════════════════
    #  Accounts & rewards
    # ══════════════════════════════════════════════════════════

    async def _handle_account_get(self, request: dict[str, Any]) -> dict[str, Any]:
        account = await self._app.service.get_account(request.get("account_id"))
        return account.to_dict()

    async def _handle_account_open(self, request: dict[str, Any]) -> Any:
        result = await self._app.service.open_account(
            request.get("account_id"), request.get("referred_by"),
        )
        if isinstance(result, QueuedResult):
            return result
        account, created = result
        return {"created": created, "account": account.to_dict()}

    async def _handle_checkin(self, request: dict[str, Any]) -> Any:
        return await self._app.service.check_in(request.get("account_id"))

    async def _handle_spin(self, request: dict[str, Any]) -> Any:
        return await self._app.service.spin_wheel(request.get("account_id"))

    async def _handle_video(self, request: dict[str, Any]) -> Any:
        return await self._app.service.reward_video(request.get("account_id"))

    async def _handle_ad(self, request: dict[str, Any]) -> Any:
        return await self._app.service.reward_ad(request.get("account_id"))

    async def _handle_add(self, request: dict[str, Any]) -> Any:
        kind = request.get("kind")
        if not kind:
            raise ValueError("kind is required")
        return await self._app.service.add_coins(
            request.get("account_id"),
            request.get("amount"),
            kind,
            request.get("description", ""),
        )

    async def _handle_task(self, request: dict[str, Any]) -> Any:
        task_id = request.get("task_id")
        if not task_id:
            raise ValueError("task_id is required")
        return await self._app.service.complete_task(request.get("account_id"), task_id)

    async def _handle_withdraw(self, request: dict[str, Any]) -> Any:
        return await self._app.service.request_withdrawal(
            request.get("account_id"),
            request.get("method", ""),
            request.get("account", ""),
            request.get("amount"),
        )

    async def _handle_withdrawals_list(self, request: dict[str, Any]) -> dict[str, Any]:
        limit = int(request.get("limit", 10))
        withdrawals = await self._app.service.get_withdrawals(request.get("account_id"), limit)
        return {"withdrawals": [w.to_dict() for w in withdrawals]}

    # ══════════════════════════════════════════════════════════
    #  Queue & config
    # ══════════════════════════════════════════════════════════

    async def _handle_queue_status(self, request: dict[str, Any]) -> dict[str, Any]:
        return await self._app.service.queue_status()

    async def _handle_queue_drain(self, request: dict[str, Any]) -> Any:
        return await self._app.service.drain_queue()

    async def _handle_config_invalidate(self, request: dict[str, Any]) -> dict[str, Any]:
        count = self._app.config_provider.handle_change_notification(request.get("key"))
        return {"invalidated": count}

    _HANDLER_MAP: dict[str, Any] = {
        "system.ping": _handle_ping,
        "system.health": _handle_health,
        "account.get": _handle_account_get,
        "account.open": _handle_account_open,
        "rewards.checkin": _handle_checkin,
        "rewards.spin": _handle_spin,
        "rewards.video": _handle_video,
        "rewards.ad": _handle_ad,
        "rewards.add": _handle_add,
        "rewards.task": _handle_task,
        "rewards.withdraw": _handle_withdraw,
        "withdrawals.list": _handle_withdrawals_list,
        "queue.status": _handle_queue_status,
        "queue.drain": _handle_queue_drain,
        "config.invalidate": _handle_config_invalidate,
    }
