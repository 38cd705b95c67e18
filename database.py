"""
数据库模块 —— 负责所有跟 PostgreSQL 打交道的事情
==============================================
包括：
- 为每个人设档案创建五张表
- 按触发词读取记忆（facts / reflections / episodes）
- 存储对话记录（fallback 历史）和长期记忆片段（episodes）

表名全部来自启动时校验过的 ProfileTables，SQL 里一律加双引号。
"""

import asyncio
import os
from typing import Dict, List, Optional

import asyncpg

from relay_config import ProfileTables, RelayConfig, normalize_trigger_name

DATABASE_URL = os.getenv("DATABASE_URL", "")


def _q(identifier: str) -> str:
    return f'"{identifier}"'


# ============================================================
# 连接池管理
# ============================================================

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        if not DATABASE_URL:
            raise RuntimeError("DATABASE_URL 未设置！")
        _pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=5)
        print("✅ 数据库连接池已创建")
    return _pool


async def close_pool():
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        print("✅ 数据库连接池已关闭")


# ============================================================
# 表结构初始化
# ============================================================

async def init_tables(config: RelayConfig):
    pool = await get_pool()
    async with pool.acquire() as conn:
        for profile in config.profiles:
            t = profile.tables
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {_q(t.triggers)} (
                    id              SERIAL PRIMARY KEY,
                    name            TEXT NOT NULL,
                    created_at      TIMESTAMPTZ DEFAULT NOW()
                );
            """)

            # 归一化后的名字唯一，避免大小写不同的两个触发词撞车
            await conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {_q(t.triggers[:50] + "_name_key")}
                ON {_q(t.triggers)} (btrim(lower(replace(name, '_', ' '))));
            """)

            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {_q(t.facts)} (
                    id              SERIAL PRIMARY KEY,
                    trigger_id      INTEGER NOT NULL REFERENCES {_q(t.triggers)}(id) ON DELETE CASCADE,
                    name            TEXT NOT NULL,
                    content         TEXT NOT NULL,
                    created_at      TIMESTAMPTZ DEFAULT NOW()
                );
            """)

            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {_q(t.reflections)} (
                    id              SERIAL PRIMARY KEY,
                    trigger_id      INTEGER NOT NULL REFERENCES {_q(t.triggers)}(id) ON DELETE CASCADE,
                    content         TEXT NOT NULL,
                    created_at      TIMESTAMPTZ DEFAULT NOW()
                );
            """)

            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {_q(t.episodes)} (
                    id              SERIAL PRIMARY KEY,
                    trigger_id      INTEGER REFERENCES {_q(t.triggers)}(id) ON DELETE SET NULL,
                    user_message    TEXT NOT NULL,
                    model_reply     TEXT NOT NULL,
                    created_at      TIMESTAMPTZ DEFAULT NOW()
                );
            """)

            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {_q(t.fallback)} (
                    id              SERIAL PRIMARY KEY,
                    user_message    TEXT NOT NULL,
                    model_reply     TEXT NOT NULL,
                    remember        BOOLEAN DEFAULT FALSE,
                    created_at      TIMESTAMPTZ DEFAULT NOW()
                );
            """)

    print(f"✅ 数据库表结构已就绪（{len(config.profiles)} 个人设档案）")


# ============================================================
# 触发词记忆
# ============================================================

async def fetch_trigger(tables: ProfileTables, name: str):
    """
    按名字查触发词（归一化后比较）
    查不到、查到多条、数据库出错，一律返回 None，不往上抛
    """
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT id, name FROM {_q(tables.triggers)} "
                f"WHERE btrim(lower(replace(name, '_', ' '))) = $1 LIMIT 2",
                normalize_trigger_name(name),
            )
    except Exception as e:
        print(f"⚠️  触发词查询失败 '{name}': {e}")
        return None

    if len(rows) != 1:
        print(f"🔍 触发词 '{name}' → 命中 {len(rows)} 条，按未找到处理")
        return None
    return rows[0]


async def _fetch_children(table: str, trigger_id: int):
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.fetch(
            f"SELECT * FROM {_q(table)} WHERE trigger_id = $1 ORDER BY id ASC",
            trigger_id,
        )


async def fetch_memory_bundle(tables: ProfileTables, trigger_id: int) -> Optional[Dict[str, list]]:
    """
    并发读取某个触发词下的 facts / reflections / episodes
    任何一个失败整包作废（返回 None），绝不返回半个包
    """
    results = await asyncio.gather(
        _fetch_children(tables.facts, trigger_id),
        _fetch_children(tables.reflections, trigger_id),
        _fetch_children(tables.episodes, trigger_id),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, BaseException):
            print(f"⚠️  记忆包读取失败 (trigger_id={trigger_id}): {result}")
            return None

    facts, reflections, episodes = results
    print(f"📚 记忆包已读取: {len(facts)} facts / {len(reflections)} reflections / {len(episodes)} episodes")
    return {
        "facts": list(facts),
        "reflections": list(reflections),
        "episodes": list(episodes),
    }


# ============================================================
# 对话记录操作
# ============================================================

async def save_exchange(tables: ProfileTables, user_message: str, model_reply: str, remember: bool = False):
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"INSERT INTO {_q(tables.fallback)} (user_message, model_reply, remember) VALUES ($1, $2, $3)",
            user_message, model_reply, remember,
        )


async def save_episode(tables: ProfileTables, user_message: str, model_reply: str, trigger_id: Optional[int] = None):
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"INSERT INTO {_q(tables.episodes)} (trigger_id, user_message, model_reply) VALUES ($1, $2, $3)",
            trigger_id, user_message, model_reply,
        )


async def get_recent_exchanges(tables: ProfileTables, limit: int = 20):
    """取最近 limit 条，按时间正序返回（旧的在前）"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT id, user_message, model_reply, remember, created_at FROM {_q(tables.fallback)} "
            f"ORDER BY id DESC LIMIT $1",
            limit,
        )
        return list(reversed(rows))


async def clear_exchanges(tables: ProfileTables):
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(f"DELETE FROM {_q(tables.fallback)}")
    print(f"🗑️  已清空对话记录: {tables.fallback}")


async def search_exchanges(tables: ProfileTables, query: str, limit: int = 50):
    """在用户消息和模型回复里做不区分大小写的子串搜索，新的在前"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT id, user_message, model_reply, remember, created_at FROM {_q(tables.fallback)} "
            f"WHERE strpos(lower(user_message), lower($1)) > 0 "
            f"OR strpos(lower(model_reply), lower($1)) > 0 "
            f"ORDER BY id DESC LIMIT $2",
            query, limit,
        )
    print(f"🔍 搜索 '{query}' → 命中 {len(rows)} 条")
    return rows


# ============================================================
# 预置记忆（只在导入时使用，聊天流程不会写这些表）
# ============================================================

async def ensure_trigger(tables: ProfileTables, name: str) -> int:
    existing = await fetch_trigger(tables, name)
    if existing is not None:
        return existing["id"]
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.fetchval(
            f"INSERT INTO {_q(tables.triggers)} (name) VALUES ($1) RETURNING id",
            name,
        )


async def save_fact(tables: ProfileTables, trigger_id: int, name: str, content: str):
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"INSERT INTO {_q(tables.facts)} (trigger_id, name, content) VALUES ($1, $2, $3)",
            trigger_id, name, content,
        )


async def save_reflection(tables: ProfileTables, trigger_id: int, content: str):
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"INSERT INTO {_q(tables.reflections)} (trigger_id, content) VALUES ($1, $2)",
            trigger_id, content,
        )


async def has_fact(tables: ProfileTables, trigger_id: int, name: str, content: str) -> bool:
    pool = await get_pool()
    async with pool.acquire() as conn:
        existing = await conn.fetchval(
            f"SELECT COUNT(*) FROM {_q(tables.facts)} WHERE trigger_id = $1 AND name = $2 AND content = $3",
            trigger_id, name, content,
        )
    return existing > 0


async def has_reflection(tables: ProfileTables, trigger_id: int, content: str) -> bool:
    pool = await get_pool()
    async with pool.acquire() as conn:
        existing = await conn.fetchval(
            f"SELECT COUNT(*) FROM {_q(tables.reflections)} WHERE trigger_id = $1 AND content = $2",
            trigger_id, content,
        )
    return existing > 0
