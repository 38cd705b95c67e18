"""
聊天主流程
==========
一次请求的完整流程：
1. 检测用户消息里的触发词 → 读取记忆包
2. 用户显式 <<memory_request: ...>> → 读取请求的记忆
3. 读取最近对话历史
4. 拼装 messages，调用 LLM
5. 模型回复里有 <<memory_request: ...>> → 补一轮记忆再问一次（最多一轮）
6. 解析 [[remember]]，存对话记录；需要记住时再存一条 episode
"""

import os
from typing import Dict, List, Optional, Tuple

import database
from llm_client import LLMError, call_chat_completion
from markers import ParsedText, detect_trigger, match_known_trigger, parse_markers
from memory_context import build_messages, build_system_instruction, format_memory, history_to_turns
from relay_config import ModelRoute, Profile, RelayConfig

# 每次注入的最近对话条数（每条 = 一问一答）
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "20"))

# 记忆搜索最多返回条数
SEARCH_LIMIT = int(os.getenv("SEARCH_LIMIT", "50"))


def _first_known(names: List[str], known: List[str]) -> Optional[str]:
    for name in names:
        matched = match_known_trigger(name, known)
        if matched:
            return matched
        print(f"🚫 忽略未知的记忆请求: {name}")
    return None


class ChatRelay:
    def __init__(self, config: RelayConfig, store=database, llm=call_chat_completion,
                 history_limit: int = HISTORY_LIMIT, persona: str = ""):
        self.config = config
        self.store = store
        self.llm = llm
        self.history_limit = history_limit
        self.persona = persona

    # ---------- 记忆 / 历史 ----------

    async def load_memory(self, profile: Profile, trigger_name: str) -> Tuple[Optional[int], str]:
        """返回 (trigger_id, 记忆文本)；找不到时返回 (None, "")"""
        trigger = await self.store.fetch_trigger(profile.tables, trigger_name)
        if trigger is None:
            print(f"ℹ️  数据库里没有触发词: {trigger_name}")
            return None, ""
        bundle = await self.store.fetch_memory_bundle(profile.tables, trigger["id"])
        if bundle is None:
            return None, ""
        return trigger["id"], format_memory(bundle)

    async def load_history(self, profile: Profile, limit: Optional[int] = None) -> List[Dict[str, str]]:
        rows = await self.store.get_recent_exchanges(profile.tables, limit or self.history_limit)
        return history_to_turns(rows)

    # ---------- 主流程 ----------

    async def chat(self, model: str, user_message: str) -> str:
        route, profile = self.config.resolve(model)

        print("\n" + "=" * 30)
        print(f"📨 新消息: {user_message[:80]}")
        print(f"👤 人设档案: {profile.name}")

        active_trigger_id = None
        loaded = set()

        # 1. 自动触发词
        memory_block = ""
        trigger_name = detect_trigger(user_message, profile.triggers)
        if trigger_name:
            loaded.add(trigger_name)
            trigger_id, memory_block = await self.load_memory(profile, trigger_name)
            if trigger_id is not None:
                active_trigger_id = trigger_id

        # 2. 用户显式请求
        requested_block = ""
        requested = _first_known(parse_markers(user_message).memory_requests, profile.triggers)
        if requested and requested not in loaded:
            print(f"📥 用户请求记忆: {requested}")
            loaded.add(requested)
            trigger_id, requested_block = await self.load_memory(profile, requested)
            if trigger_id is not None:
                active_trigger_id = trigger_id

        # 3. 最近历史
        history = await self.load_history(profile)

        # 4. 第一次调用，失败直接抛出，不写任何记录
        instruction = build_system_instruction(self.persona, profile.triggers)
        messages = build_messages(instruction, memory_block, requested_block, history, user_message)
        raw_reply = await self.llm(route, messages)
        print(f"🤖 模型回复: {raw_reply[:120]}")
        parsed = parse_markers(raw_reply)

        # 5. 模型请求记忆，最多补一轮；第二轮回复里的请求不再处理
        if parsed.memory_requests:
            parsed, round_trigger_id = await self._memory_round(
                route, profile, parsed, loaded, instruction, memory_block, requested_block, history, user_message,
            )
            if round_trigger_id is not None:
                active_trigger_id = round_trigger_id

        # 6. 保存
        reply = parsed.cleaned_text
        print(f"🧠 remember: {parsed.remember}")
        await self.store.save_exchange(profile.tables, user_message, reply, parsed.remember)
        if parsed.remember:
            await self.store.save_episode(profile.tables, user_message, reply, active_trigger_id)
            print(f"💾 已存入长期记忆 (trigger_id={active_trigger_id})")
        return reply

    async def _memory_round(self, route: ModelRoute, profile: Profile, first: ParsedText, loaded: set,
                            instruction: str, memory_block: str, requested_block: str,
                            history: List[Dict[str, str]], user_message: str) -> Tuple[ParsedText, Optional[int]]:
        name = _first_known(first.memory_requests, profile.triggers)
        if not name or name in loaded:
            return first, None

        print(f"🔁 模型请求记忆: {name}")
        loaded.add(name)
        trigger_id, block = await self.load_memory(profile, name)
        if not block:
            return first, None

        combined = "\n\n".join(b for b in (requested_block, block) if b)
        messages = build_messages(instruction, memory_block, combined, history, user_message)
        try:
            second_reply = await self.llm(route, messages)
        except LLMError as e:
            print(f"⚠️  补充记忆后的第二次调用失败，使用第一次回复: {e}")
            return first, None
        print(f"🤖 第二轮回复: {second_reply[:120]}")
        second = parse_markers(second_reply)
        # 任意一轮标了 [[remember]] 都算
        return second._replace(remember=second.remember or first.remember), trigger_id

    # ---------- 记忆管理 ----------

    async def get_history(self, model: str, limit: int = HISTORY_LIMIT):
        _, profile = self.config.resolve(model)
        return await self.store.get_recent_exchanges(profile.tables, limit)

    async def clear_history(self, model: str):
        _, profile = self.config.resolve(model)
        await self.store.clear_exchanges(profile.tables)

    async def search_history(self, model: str, query: str, limit: int = SEARCH_LIMIT):
        _, profile = self.config.resolve(model)
        return await self.store.search_exchanges(profile.tables, query, limit)
