"""
LLM 调用模块 —— 转发到 OpenAI 兼容的 chat/completions 接口
=========================================================
支持 OpenAI 和 DeepSeek，按路由配置里的 provider 选择地址和 Key。
不重试：失败直接抛 LLMError，由调用方决定怎么处理。
"""

import os
from typing import Dict, List, Optional

import httpx

from relay_config import ModelRoute

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_API_URL = os.getenv("OPENAI_API_URL", "https://api.openai.com/v1/chat/completions")

DEEPSEEK_API_KEY = os.getenv("DEEPSEEK_API_KEY", "")
DEEPSEEK_API_URL = os.getenv("DEEPSEEK_API_URL", "https://api.deepseek.com/v1/chat/completions")

LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "300"))


class LLMError(Exception):
    """上游 LLM 调用失败（非 200 / 网络错误 / Key 未配置）"""


def _provider_endpoint(provider: str):
    if provider == "deepseek":
        return DEEPSEEK_API_URL, DEEPSEEK_API_KEY
    return OPENAI_API_URL, OPENAI_API_KEY


async def call_chat_completion(
    route: ModelRoute,
    messages: List[Dict[str, str]],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    发送 {model, messages}，返回 choices[0].message.content

    参数：
        route: 已解析的模型路由（决定 provider 和上游模型名）
        messages: [{"role": ..., "content": ...}, ...]
        transport: 测试时注入 httpx.MockTransport
    """
    url, api_key = _provider_endpoint(route.provider)
    if not api_key:
        raise LLMError(f"{route.provider} 的 API Key 未设置，请在环境变量中配置")

    try:
        async with httpx.AsyncClient(timeout=LLM_TIMEOUT, transport=transport) as client:
            response = await client.post(
                url,
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                json={"model": route.upstream_model, "messages": messages},
            )
    except httpx.HTTPError as e:
        raise LLMError(f"{route.provider} 请求失败: {e!r}") from e

    if response.status_code != 200:
        raise LLMError(f"{route.provider} 返回 {response.status_code}: {response.text[:500]}")

    try:
        data = response.json()
    except ValueError as e:
        raise LLMError(f"{route.provider} 返回了无法解析的响应: {e}") from e
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    return content or "No reply"
