"""
记忆拼装 —— 把记忆和历史整理成发给 LLM 的 messages
==================================================
顺序固定：
1. 系统指令（人设 + 可用触发词 + 标记语法）
2. MEMORY: 自动命中的触发词记忆
3. REQUESTED_MEMORY: 显式请求的记忆
4. 最近的对话历史（旧 → 新）
5. 当前用户消息
记忆放在历史之前，模型会把它当作背景而不是最新一句话。
"""

from typing import Dict, List, Mapping, Sequence

DEFAULT_PERSONA = "You are a relational AI agent."

SYSTEM_INSTRUCTION = """{persona}

Available memory triggers:
{trigger_lines}

If the user references one of these triggers, the backend automatically provides memory.

You can also explicitly request memory by emitting:
<<memory_request: trigger_name>>

If this exchange should be kept as long-term memory, add this marker anywhere in your reply:
[[remember]]

Use memory only for grounding, never for invention."""


def build_system_instruction(persona: str, triggers: Sequence[str]) -> str:
    trigger_lines = "\n".join(f"- {t}" for t in triggers) or "- (none)"
    return SYSTEM_INSTRUCTION.format(
        persona=persona or DEFAULT_PERSONA,
        trigger_lines=trigger_lines,
    )


def format_memory(bundle: Mapping[str, Sequence[Mapping]]) -> str:
    """
    把 {facts, reflections, episodes} 渲染成纯文本
    空的分组整段省略，条目保持数据库返回的顺序
    """
    sections = []

    facts = bundle.get("facts") or []
    if facts:
        lines = [f"• {f['name']}: {f['content']}" for f in facts]
        sections.append("FACTS:\n" + "\n".join(lines))

    reflections = bundle.get("reflections") or []
    if reflections:
        lines = [f"• {r['content']}" for r in reflections]
        sections.append("REFLECTIONS:\n" + "\n".join(lines))

    episodes = bundle.get("episodes") or []
    if episodes:
        pairs = [f"USER: {e['user_message']}\nASSISTANT: {e['model_reply']}" for e in episodes]
        sections.append("EPISODES:\n" + "\n\n".join(pairs))

    return "\n\n".join(sections).rstrip()


def history_to_turns(rows: Sequence[Mapping]) -> List[Dict[str, str]]:
    """每行历史拆成 user + assistant 两条，rows 需已按时间正序"""
    turns = []
    for row in rows:
        turns.append({"role": "user", "content": row["user_message"]})
        turns.append({"role": "assistant", "content": row["model_reply"]})
    return turns


def build_messages(
    instruction: str,
    memory_block: str,
    requested_block: str,
    history: Sequence[Dict[str, str]],
    user_message: str,
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": instruction}]
    if memory_block:
        messages.append({"role": "system", "content": "MEMORY:\n" + memory_block})
    if requested_block and requested_block != memory_block:
        messages.append({"role": "system", "content": "REQUESTED_MEMORY:\n" + requested_block})
    messages.extend(history)
    messages.append({"role": "user", "content": user_message})
    return messages
