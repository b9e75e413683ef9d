from __future__ import annotations

from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Header, HTTPException, Query

from core.errors import ValidationError

if TYPE_CHECKING:
    from core.bot import ModmailBot


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_api_app(bot: ModmailBot) -> FastAPI:
    app = FastAPI(title="Modmail Bot API", version="1.0.0")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "open_tickets": len(bot.registry)}

    @app.get("/stats/global")
    async def global_stats(x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, bot.config.api.api_key)
        rollup = await bot.history_repo.global_stats()
        if rollup is None:
            return {"total_tickets": 0, "closed_tickets": 0, "average_rating": None, "categories": {}, "tags": {}}
        return {
            "total_tickets": rollup.total_tickets,
            "closed_tickets": rollup.closed_tickets,
            "average_rating": rollup.average_rating,
            "categories": rollup.categories,
            "tags": rollup.tags,
        }

    @app.get("/guilds/{guild_id}/stats")
    async def stats(
        guild_id: int,
        days: int = Query(default=30),
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _auth(x_api_key, bot.config.api.api_key)
        try:
            data = await bot.analytics_service.basic_stats(guild_id, days)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.user_message) from exc
        payload = asdict(data)
        payload["satisfaction"]["response_rate"] = data.satisfaction.response_rate
        return payload

    @app.get("/guilds/{guild_id}/staff")
    async def staff(
        guild_id: int,
        days: int = Query(default=30),
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _auth(x_api_key, bot.config.api.api_key)
        try:
            rows = await bot.analytics_service.staff_performance(guild_id, days)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.user_message) from exc
        return {"items": [{**asdict(row), "close_rate": row.close_rate} for row in rows]}

    @app.get("/guilds/{guild_id}/tickets/open")
    async def open_tickets(guild_id: int, x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, bot.config.api.api_key)
        return {
            "items": [
                {
                    "id": ticket.id,
                    "numeric_id": ticket.numeric_id,
                    "user_id": ticket.user_id,
                    "status": ticket.status,
                    "priority": ticket.priority,
                    "category": ticket.category,
                    "assigned_to": ticket.assigned_to,
                    "thread_id": ticket.thread_id,
                    "created_at": ticket.created_at,
                }
                for ticket in bot.registry.for_guild(guild_id)
            ]
        }

    return app
