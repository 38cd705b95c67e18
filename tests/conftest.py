import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest

from llm_client import LLMError
from relay_config import RelayConfig, normalize_trigger_name

TEST_TRIGGERS = [
    "first_chats_general",
    "relational_subject",
    "first_chats_Nadine",
]


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig.model_validate(
        {
            "profiles": [
                {
                    "name": "Nevan",
                    "tables": {
                        "triggers": "triggers_Nevan",
                        "facts": "facts_Nevan",
                        "reflections": "reflections_Nevan",
                        "episodes": "episodes_Nevan",
                        "fallback": "memory_chatgpt_4o_latest",
                    },
                    "triggers": TEST_TRIGGERS,
                }
            ],
            "models": {
                "gpt-test": {"profile": "Nevan"},
                "deepseek": {"profile": "Nevan", "provider": "deepseek", "upstream_model": "deepseek-chat"},
            },
        }
    )


class FakeStore:
    """In-memory stand-in for the database module."""

    def __init__(self) -> None:
        self.triggers: List[Dict[str, Any]] = []
        self.facts: List[Dict[str, Any]] = []
        self.reflections: List[Dict[str, Any]] = []
        self.episodes: List[Dict[str, Any]] = []
        self.exchanges: List[Dict[str, Any]] = []
        self.fail_bundle = False
        self.bundle_calls: List[int] = []

    def add_trigger(self, trigger_id: int, name: str) -> None:
        self.triggers.append({"id": trigger_id, "name": name})

    def add_exchange(self, user_message: str, model_reply: str, remember: bool = False) -> None:
        self.exchanges.append(
            {
                "id": len(self.exchanges) + 1,
                "user_message": user_message,
                "model_reply": model_reply,
                "remember": remember,
            }
        )

    async def fetch_trigger(self, tables, name: str) -> Optional[Dict[str, Any]]:
        key = normalize_trigger_name(name)
        rows = [t for t in self.triggers if normalize_trigger_name(t["name"]) == key]
        return rows[0] if len(rows) == 1 else None

    async def fetch_memory_bundle(self, tables, trigger_id: int):
        self.bundle_calls.append(trigger_id)
        if self.fail_bundle:
            return None
        return {
            "facts": [f for f in self.facts if f["trigger_id"] == trigger_id],
            "reflections": [r for r in self.reflections if r["trigger_id"] == trigger_id],
            "episodes": [e for e in self.episodes if e["trigger_id"] == trigger_id],
        }

    async def get_recent_exchanges(self, tables, limit: int = 20):
        newest_first = sorted(self.exchanges, key=lambda r: r["id"], reverse=True)[:limit]
        return list(reversed(newest_first))

    async def save_exchange(self, tables, user_message, model_reply, remember=False):
        self.add_exchange(user_message, model_reply, remember)

    async def save_episode(self, tables, user_message, model_reply, trigger_id=None):
        self.episodes.append(
            {
                "id": len(self.episodes) + 1,
                "trigger_id": trigger_id,
                "user_message": user_message,
                "model_reply": model_reply,
            }
        )

    async def clear_exchanges(self, tables):
        self.exchanges.clear()

    async def search_exchanges(self, tables, query, limit=50):
        q = query.lower()
        hits = [
            r for r in self.exchanges
            if q in r["user_message"].lower() or q in r["model_reply"].lower()
        ]
        return sorted(hits, key=lambda r: r["id"], reverse=True)[:limit]

    async def ensure_trigger(self, tables, name):
        existing = await self.fetch_trigger(tables, name)
        if existing is not None:
            return existing["id"]
        trigger_id = len(self.triggers) + 1
        self.add_trigger(trigger_id, name)
        return trigger_id

    async def has_fact(self, tables, trigger_id, name, content):
        return any(
            f["trigger_id"] == trigger_id and f["name"] == name and f["content"] == content
            for f in self.facts
        )

    async def save_fact(self, tables, trigger_id, name, content):
        self.facts.append({"id": len(self.facts) + 1, "trigger_id": trigger_id, "name": name, "content": content})

    async def has_reflection(self, tables, trigger_id, content):
        return any(r["trigger_id"] == trigger_id and r["content"] == content for r in self.reflections)

    async def save_reflection(self, tables, trigger_id, content):
        self.reflections.append({"id": len(self.reflections) + 1, "trigger_id": trigger_id, "content": content})


class FakeLLM:
    """Returns queued replies and records every message list it was sent."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.calls: List[List[Dict[str, str]]] = []

    async def __call__(self, route, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def llm_error() -> LLMError:
    return LLMError("openai 返回 502: bad gateway")


class FakeConnection:
    def __init__(self, pool: "FakePool") -> None:
        self.pool = pool

    def _table(self, sql: str) -> str:
        for name in self.pool.tables:
            if f'"{name}"' in sql:
                return name
        raise AssertionError(f"no known table in: {sql}")

    async def fetch(self, sql: str, *args):
        self.pool.calls.append((sql, args))
        table = self._table(sql)
        await self.pool.wait_for_peers()
        if table in self.pool.failing:
            raise RuntimeError(f"connection lost while reading {table}")
        return list(self.pool.tables[table])

    async def execute(self, sql: str, *args):
        self.pool.calls.append((sql, args))
        return "OK"

    async def fetchval(self, sql: str, *args):
        self.pool.calls.append((sql, args))
        return self.pool.fetchval_result


class FakePool:
    """Minimal asyncpg pool: rows are canned per quoted table name."""

    def __init__(self, tables: Optional[Dict[str, list]] = None, failing=(), concurrent_reads: int = 0) -> None:
        self.tables = tables or {}
        self.failing = set(failing)
        self.calls: List[tuple] = []
        self.fetchval_result: Any = None
        # >0: each fetch blocks until that many fetches are in flight at once
        self.concurrent_reads = concurrent_reads
        self.in_flight = 0
        self.peak_in_flight = 0
        self._all_arrived = asyncio.Event()

    async def wait_for_peers(self) -> None:
        if not self.concurrent_reads:
            return
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        if self.in_flight >= self.concurrent_reads:
            self._all_arrived.set()
        try:
            await asyncio.wait_for(self._all_arrived.wait(), timeout=1.0)
        finally:
            self.in_flight -= 1

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self)

    async def close(self) -> None:
        pass
