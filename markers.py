"""
触发词识别 + 回复标记解析
=========================
- 在用户消息里找已知触发词（不区分大小写，子串匹配，先到先得）
- 解析文本里的控制标记：
    [[remember]]                 → 把这轮对话存成长期记忆（也认 {{remember}} / <<remember>>）
    <<memory_request: 名称>>     → 请求某个触发词对应的记忆
  一个正则一次扫完，输出清理后的文本 + 结构化结果。
"""

import re
from typing import List, NamedTuple, Optional, Sequence

from relay_config import normalize_trigger_name

MARKER_PATTERN = re.compile(
    r"\[\[\s*remember\s*\]\]"
    r"|\{\{\s*remember\s*\}\}"
    r"|<<\s*remember\s*>>"
    r"|<<\s*memory_request\s*:(?P<name>.*?)>>",
    re.IGNORECASE,
)


class ParsedText(NamedTuple):
    cleaned_text: str
    remember: bool
    memory_requests: List[str]


def detect_trigger(message: str, known: Sequence[str]) -> Optional[str]:
    """返回消息里第一个命中的触发词（按配置顺序），没有就返回 None"""
    if not message:
        return None
    lower = message.lower()
    for trigger in known:
        plain = trigger.lower()
        spaced = plain.replace("_", " ")
        if plain in lower or spaced in lower:
            print(f"🎯 命中触发词: {trigger}")
            return trigger
    return None


def match_known_trigger(name: str, known: Sequence[str]) -> Optional[str]:
    """memory_request 里的名字必须在白名单里，否则当作没有"""
    key = normalize_trigger_name(name or "")
    if not key:
        return None
    for trigger in known:
        if normalize_trigger_name(trigger) == key:
            return trigger
    return None


def parse_markers(text: str) -> ParsedText:
    remember = False
    requests: List[str] = []

    def _consume(match):
        nonlocal remember
        name = match.group("name")
        if name is None:
            remember = True
        elif name.strip():
            requests.append(name.strip())
        return ""

    cleaned = MARKER_PATTERN.sub(_consume, text or "")
    # 删掉嵌套标记后可能拼出新的标记，扫到干净为止
    while MARKER_PATTERN.search(cleaned):
        cleaned = MARKER_PATTERN.sub(_consume, cleaned)

    return ParsedText(cleaned.strip(), remember, requests)


def strip_markers(text: str) -> str:
    return parse_markers(text).cleaned_text


def has_remember_marker(text: str) -> bool:
    return parse_markers(text).remember
