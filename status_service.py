import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query

import config
import database
from errors import StoreUnavailable
from logging_setup import setup_logging
from ranks import load_rank_table

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.init_db()
    app.state.table = load_rank_table(config.RANKS_FILE)
    yield
    await database.close_db()


app = FastAPI(lifespan=lifespan)


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/api/ranks")
async def api_ranks():
    return {
        "ranks": [
            {"rank_name": t.rank_name, "level_min": t.level_min, "level_max": t.level_max, "role_id": t.role_id}
            for t in app.state.table
        ]
    }


@app.get("/api/verification")
async def api_verification(discord_id: str = Query(...)):
    try:
        record = await database.get_verification(discord_id)
    except StoreUnavailable as e:
        logger.error("Store unavailable: %s", e)
        raise HTTPException(503, "store unavailable")
    if record is None:
        return {"found": False, "data": None}
    return {
        "found": True,
        "data": {
            "discord_id": record.user_id,
            "username": record.username,
            "rank_name": record.rank_name,
            "level_detected": record.level_detected,
            "role_id_assigned": record.role_id_assigned,
            "verified_at": record.verified_at,
            "updated_at": record.updated_at,
        },
    }


@app.get("/api/history")
async def api_history(discord_id: str | None = Query(None), limit: int = Query(20, ge=1, le=200)):
    try:
        rows = await database.get_recent_actions(limit=limit, discord_id=discord_id)
    except StoreUnavailable as e:
        logger.error("Store unavailable: %s", e)
        raise HTTPException(503, "store unavailable")
    return {"count": len(rows), "data": rows}


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
