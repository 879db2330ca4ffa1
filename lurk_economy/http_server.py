"""HTTP surface for lurk-economy (aiohttp.web).

Exposes health, Prometheus metrics, the dashboard/leaderboard read models
used by the overlays, a token-gated endpoint for command deliveries coming
from a webhook relay, and token-gated shop and history admin routes.
"""

from __future__ import annotations

import hmac
import json
import logging
import sqlite3
import time
from typing import TYPE_CHECKING

from aiohttp import web

from . import __version__
from .command_processor import CommandDelivery
from .utils import format_timestamp, now_utc

if TYPE_CHECKING:
    from .command_processor import CommandProcessor
    from .config import EconomyConfig
    from .database import EconomyDatabase
    from .lurk_reconciler import LurkReconciler

INGEST_TOKEN_HEADER = "X-Ingest-Token"


class EconomyHttpServer:
    """Health, metrics and stats endpoints."""

    def __init__(
        self,
        config: EconomyConfig,
        database: EconomyDatabase,
        reconciler: LurkReconciler,
        processor: CommandProcessor,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._reconciler = reconciler
        self._processor = processor
        self._logger = logger or logging.getLogger("economy.http")
        self._start_time = time.time()
        self._runner: web.AppRunner | None = None

        self.app = web.Application()
        self.setup_routes()

    def setup_routes(self) -> None:
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/metrics", self.handle_metrics)
        self.app.router.add_get("/api/stats/dashboard", self.handle_dashboard)
        self.app.router.add_get("/api/stats/leaderboard", self.handle_leaderboard)
        self.app.router.add_post("/api/commands", self.handle_command_delivery)
        self.app.router.add_get("/api/shop", self.handle_shop_list)
        self.app.router.add_post("/api/shop", self.handle_shop_add)
        self.app.router.add_post("/api/shop/{name}/enabled", self.handle_shop_toggle)
        self.app.router.add_get("/api/users/{user_id}/history", self.handle_user_history)

    async def start(self) -> None:
        """Start listening on the configured host/port."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.http.host, self._config.http.port)
        await site.start()
        self._logger.info(
            "HTTP server started on %s:%d", self._config.http.host, self._config.http.port,
        )

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ══════════════════════════════════════════════════════════
    #  Health & Metrics
    # ══════════════════════════════════════════════════════════

    async def handle_health(self, request: web.Request) -> web.Response:
        database = "connected"
        try:
            await self._db.get_user_count()
        except Exception:
            self._logger.exception("Health check: database unavailable")
            database = "error"

        ok = database == "connected"
        return web.json_response(
            {
                "ok": ok,
                "ts": format_timestamp(now_utc()),
                "version": __version__,
                "database": database,
                "uptime_seconds": round(time.time() - self._start_time, 1),
            },
            status=200 if ok else 503,
        )

    async def handle_metrics(self, request: web.Request) -> web.Response:
        lines = await self._collect_metrics()
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def _collect_metrics(self) -> list[str]:
        """Collect economy-specific Prometheus metrics."""
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"economy_commands_processed_total {self._processor.commands_processed}")
        lines.append(f"economy_duplicates_dropped_total {self._processor.duplicates_dropped}")
        lines.append(f"economy_points_awarded_total {self._reconciler.points_awarded_total}")
        lines.append(
            f"economy_points_spent_total {self._processor.spending_engine.points_spent_total}"
        )
        lines.append(f"economy_reconcile_passes_total {self._reconciler.passes_total}")

        # ── Gauges ───────────────────────────────────────────
        try:
            lines.append(f"economy_total_users {await self._db.get_user_count()}")
            lines.append(f"economy_total_channels {await self._db.get_channel_count()}")
            lines.append(f"economy_total_circulation {await self._db.get_total_points()}")
        except Exception:
            self._logger.exception("Failed to collect database gauges")

        lines.append(f"economy_uptime_seconds {time.time() - self._start_time:.1f}")
        return lines

    # ══════════════════════════════════════════════════════════
    #  Stats
    # ══════════════════════════════════════════════════════════

    async def handle_dashboard(self, request: web.Request) -> web.Response:
        """Run one accrual pass and report counts plus the live roster."""
        try:
            live = await self._reconciler.fetch_live_chatters()
            channels = await self._db.get_channel_count()
            users = await self._db.get_user_count()
        except Exception as e:
            self._logger.exception("Dashboard stats failed")
            return web.json_response({"error": str(e)}, status=500)

        return web.json_response({
            "channelsCount": channels,
            "usersCount": users,
            "liveChatters": live.to_dict(),
        })

    async def handle_leaderboard(self, request: web.Request) -> web.Response:
        size = self._config.leaderboard.size
        try:
            top_points = await self._db.get_top_users("points", size)
            top_level = await self._db.get_top_users("xp", size)
        except Exception as e:
            self._logger.exception("Leaderboard query failed")
            return web.json_response({"error": str(e)}, status=500)

        return web.json_response({
            "topPoints": [self._leaderboard_entry(u) for u in top_points],
            "topLevel": [self._leaderboard_entry(u) for u in top_level],
        })

    @staticmethod
    def _leaderboard_entry(user: dict) -> dict:
        return {
            "displayName": user["display_name"],
            "points": user["points"],
            "level": user["level"],
            "xp": user["xp"],
        }

    # ══════════════════════════════════════════════════════════
    #  Command Ingestion
    # ══════════════════════════════════════════════════════════

    def _check_token(self, request: web.Request) -> web.Response | None:
        """401 response when the ingest token is wrong; 404 when the token is unset."""
        expected = self._config.http.ingest_token
        if not expected:
            raise web.HTTPNotFound()

        supplied = request.headers.get(INGEST_TOKEN_HEADER, "")
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            self._logger.warning(
                "Rejected %s %s from %s: bad token", request.method, request.path, request.remote,
            )
            return web.json_response({"error": "unauthorized"}, status=401)
        return None

    async def handle_command_delivery(self, request: web.Request) -> web.Response:
        denied = self._check_token(request)
        if denied is not None:
            return denied

        try:
            payload = await request.json()
            delivery = CommandDelivery.from_dict(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            return web.json_response({"error": f"invalid payload: {e}"}, status=400)

        response = await self._processor.handle(delivery)
        return web.json_response(
            {"accepted": True, "handled": response is not None},
            status=202,
        )

    # ══════════════════════════════════════════════════════════
    #  Admin (token-gated)
    # ══════════════════════════════════════════════════════════

    async def handle_shop_list(self, request: web.Request) -> web.Response:
        denied = self._check_token(request)
        if denied is not None:
            return denied
        items = await self._db.list_shop_items(enabled_only=False)
        return web.json_response({"items": items})

    async def handle_shop_add(self, request: web.Request) -> web.Response:
        denied = self._check_token(request)
        if denied is not None:
            return denied
        try:
            payload = await request.json()
            name = str(payload["name"]).strip()
            cost = payload["cost"]
            if not name or isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
                raise ValueError("name must be non-empty and cost a positive integer")
            description = str(payload.get("description") or "")
            enabled = bool(payload.get("enabled", True))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            return web.json_response({"error": f"invalid payload: {e}"}, status=400)

        try:
            item_id = await self._db.add_shop_item(name, cost, description, enabled)
        except sqlite3.IntegrityError:
            return web.json_response({"error": f"item {name!r} already exists"}, status=409)
        self._logger.info("Shop item added: %s (%d pts)", name, cost)
        return web.json_response({"id": item_id, "name": name, "cost": cost}, status=201)

    async def handle_shop_toggle(self, request: web.Request) -> web.Response:
        denied = self._check_token(request)
        if denied is not None:
            return denied
        name = request.match_info["name"]
        try:
            payload = await request.json()
            enabled = payload["enabled"]
            if not isinstance(enabled, bool):
                raise TypeError("enabled must be a boolean")
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            return web.json_response({"error": f"invalid payload: {e}"}, status=400)

        if not await self._db.set_shop_item_enabled(name, enabled):
            return web.json_response({"error": f"item {name!r} not found"}, status=404)
        self._logger.info("Shop item %s %s", name, "enabled" if enabled else "disabled")
        return web.json_response({"name": name, "enabled": enabled})

    async def handle_user_history(self, request: web.Request) -> web.Response:
        denied = self._check_token(request)
        if denied is not None:
            return denied
        user_id = request.match_info["user_id"]
        user = await self._db.get_user(user_id)
        if user is None:
            return web.json_response({"error": "unknown user"}, status=404)
        return web.json_response({
            "user": self._leaderboard_entry(user),
            "ledger": await self._db.get_ledger_entries(user_id),
            "redemptions": await self._db.get_redemptions(user_id),
        })
