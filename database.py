import functools
import os
import sqlite3
import time

import aiosqlite

try:
    import asyncpg
except ImportError:
    asyncpg = None

from errors import StoreUnavailable
from models import VerificationRecord

DB_FILE = os.getenv("DB_FILE", "bot_database.db")
DATABASE_URL = (os.getenv("DATABASE_URL") or "").strip()
USE_POSTGRES = DATABASE_URL.startswith("postgresql://") or DATABASE_URL.startswith("postgres://")

_pg_pool = None

if asyncpg is not None:
    _DRIVER_ERRORS = (sqlite3.Error, OSError, asyncpg.PostgresError, asyncpg.InterfaceError)
else:
    _DRIVER_ERRORS = (sqlite3.Error, OSError)


def _now() -> int:
    return int(time.time())


def _store_op(fn):
    """Surface driver errors as StoreUnavailable."""
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except _DRIVER_ERRORS as e:
            raise StoreUnavailable(f"{fn.__name__} failed: {e}") from e
    return wrapper


def _row_to_record(row) -> VerificationRecord | None:
    if not row:
        return None
    row = dict(row)
    return VerificationRecord(
        user_id=row["discord_id"],
        username=row.get("username"),
        rank_name=row["rank_name"],
        level_detected=int(row["level_detected"]),
        role_id_assigned=row["role_id_assigned"],
        verified_at=int(row.get("verified_at") or 0),
        updated_at=int(row.get("updated_at") or 0),
    )


async def _ensure_pg_pool():
    global _pg_pool
    if _pg_pool is not None:
        return _pg_pool
    if asyncpg is None:
        raise RuntimeError("DATABASE_URL is set but asyncpg is not installed. Install the 'postgres' extra.")
    _pg_pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=10)
    return _pg_pool


async def _init_postgres():
    pool = await _ensure_pg_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS verifications (
                discord_id TEXT PRIMARY KEY,
                username TEXT,
                rank_name TEXT NOT NULL,
                level_detected INTEGER NOT NULL,
                role_id_assigned TEXT NOT NULL,
                verified_at BIGINT NOT NULL,
                updated_at BIGINT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS verification_history (
                id BIGSERIAL PRIMARY KEY,
                discord_id TEXT,
                username TEXT,
                action_type TEXT NOT NULL,
                rank_name TEXT,
                level_detected INTEGER,
                role_id_assigned TEXT,
                success BOOLEAN NOT NULL,
                error_message TEXT,
                timestamp BIGINT NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_verification_history_discord_id_ts ON verification_history (discord_id, timestamp DESC)"
        )


async def _init_sqlite():
    async with aiosqlite.connect(DB_FILE) as db:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS verifications (
                discord_id TEXT PRIMARY KEY,
                username TEXT,
                rank_name TEXT NOT NULL,
                level_detected INTEGER NOT NULL,
                role_id_assigned TEXT NOT NULL,
                verified_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS verification_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                discord_id TEXT,
                username TEXT,
                action_type TEXT NOT NULL,
                rank_name TEXT,
                level_detected INTEGER,
                role_id_assigned TEXT,
                success BOOLEAN NOT NULL,
                error_message TEXT,
                timestamp INTEGER NOT NULL
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_verification_history_discord_id_ts ON verification_history (discord_id, timestamp DESC)"
        )
        await db.commit()


@_store_op
async def init_db():
    if USE_POSTGRES:
        await _init_postgres()
    else:
        await _init_sqlite()


async def close_db():
    global _pg_pool
    if _pg_pool is not None:
        await _pg_pool.close()
        _pg_pool = None


@_store_op
async def get_verification(discord_id: str) -> VerificationRecord | None:
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM verifications WHERE discord_id = $1", discord_id)
            return _row_to_record(row)

    async with aiosqlite.connect(DB_FILE) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM verifications WHERE discord_id = ?", (discord_id,)) as cursor:
            row = await cursor.fetchone()
            return _row_to_record(row)


@_store_op
async def upsert_verification(record: VerificationRecord) -> VerificationRecord:
    # verified_at is set once on insert; updates only move updated_at
    ts = _now()
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO verifications (discord_id, username, rank_name, level_detected, role_id_assigned, verified_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (discord_id) DO UPDATE SET
                    username = EXCLUDED.username,
                    rank_name = EXCLUDED.rank_name,
                    level_detected = EXCLUDED.level_detected,
                    role_id_assigned = EXCLUDED.role_id_assigned,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                record.user_id,
                record.username,
                record.rank_name,
                record.level_detected,
                record.role_id_assigned,
                ts,
                ts,
            )
            return _row_to_record(row)

    async with aiosqlite.connect(DB_FILE) as db:
        db.row_factory = aiosqlite.Row
        await db.execute(
            """
            INSERT INTO verifications (discord_id, username, rank_name, level_detected, role_id_assigned, verified_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(discord_id) DO UPDATE SET
                username = excluded.username,
                rank_name = excluded.rank_name,
                level_detected = excluded.level_detected,
                role_id_assigned = excluded.role_id_assigned,
                updated_at = excluded.updated_at
            """,
            (
                record.user_id,
                record.username,
                record.rank_name,
                record.level_detected,
                record.role_id_assigned,
                ts,
                ts,
            ),
        )
        await db.commit()
        async with db.execute("SELECT * FROM verifications WHERE discord_id = ?", (record.user_id,)) as cursor:
            return _row_to_record(await cursor.fetchone())


@_store_op
async def delete_verification(discord_id: str) -> bool:
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM verifications WHERE discord_id = $1", discord_id)
            # asyncpg returns the command tag, e.g. "DELETE 1"
            return status.split()[-1] != "0"

    async with aiosqlite.connect(DB_FILE) as db:
        cursor = await db.execute("DELETE FROM verifications WHERE discord_id = ?", (discord_id,))
        await db.commit()
        return cursor.rowcount > 0


@_store_op
async def list_verifications(limit: int = 10, offset: int = 0) -> list[VerificationRecord]:
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM verifications ORDER BY verified_at DESC, discord_id LIMIT $1 OFFSET $2",
                limit,
                offset,
            )
            return [_row_to_record(r) for r in rows]

    async with aiosqlite.connect(DB_FILE) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM verifications ORDER BY verified_at DESC, discord_id LIMIT ? OFFSET ?",
            (limit, offset),
        ) as cursor:
            return [_row_to_record(r) for r in await cursor.fetchall()]


@_store_op
async def count_verifications() -> int:
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            return int(await conn.fetchval("SELECT COUNT(*) FROM verifications"))

    async with aiosqlite.connect(DB_FILE) as db:
        async with db.execute("SELECT COUNT(*) FROM verifications") as cursor:
            row = await cursor.fetchone()
            return int(row[0])


@_store_op
async def purge_all_verifications() -> int:
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM verifications")
            return int(status.split()[-1])

    async with aiosqlite.connect(DB_FILE) as db:
        cursor = await db.execute("DELETE FROM verifications")
        await db.commit()
        return cursor.rowcount


@_store_op
async def log_action(
    action_type: str,
    discord_id: str | None = None,
    username: str | None = None,
    success: bool = True,
    rank_name: str | None = None,
    level_detected: int | None = None,
    role_id_assigned: str | None = None,
    error_message: str | None = None,
):
    ts = _now()
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO verification_history (discord_id, username, action_type, rank_name, level_detected, role_id_assigned, success, error_message, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                discord_id,
                username,
                action_type,
                rank_name,
                level_detected,
                role_id_assigned,
                success,
                error_message,
                ts,
            )
        return

    async with aiosqlite.connect(DB_FILE) as db:
        await db.execute(
            """
            INSERT INTO verification_history (discord_id, username, action_type, rank_name, level_detected, role_id_assigned, success, error_message, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                discord_id,
                username,
                action_type,
                rank_name,
                level_detected,
                role_id_assigned,
                success,
                error_message,
                ts,
            ),
        )
        await db.commit()


@_store_op
async def get_recent_actions(limit: int = 20, discord_id: str | None = None) -> list[dict]:
    if USE_POSTGRES:
        pool = await _ensure_pg_pool()
        async with pool.acquire() as conn:
            if discord_id:
                rows = await conn.fetch(
                    "SELECT * FROM verification_history WHERE discord_id = $1 ORDER BY timestamp DESC, id DESC LIMIT $2",
                    discord_id,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM verification_history ORDER BY timestamp DESC, id DESC LIMIT $1",
                    limit,
                )
            return [dict(r) for r in rows]

    async with aiosqlite.connect(DB_FILE) as db:
        db.row_factory = aiosqlite.Row
        if discord_id:
            query = "SELECT * FROM verification_history WHERE discord_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?"
            params = (discord_id, limit)
        else:
            query = "SELECT * FROM verification_history ORDER BY timestamp DESC, id DESC LIMIT ?"
            params = (limit,)
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            out = []
            for r in rows:
                d = dict(r)
                # sqlite stores booleans as 0/1
                d["success"] = bool(d["success"])
                out.append(d)
            return out
