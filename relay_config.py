"""
路由配置 —— 模型 → 人设档案 → 数据表
=====================================
每个模型名对应一个人设档案（profile），每个档案有自己的五张表：
triggers / facts / reflections / episodes / fallback。

配置在启动时一次性校验，请求里只做查表，不拼接任何表名。
可以用 relay_config.json 覆盖默认配置（路径见 RELAY_CONFIG_PATH）。
"""

import json
import os
import re
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

RELAY_CONFIG_PATH = os.getenv(
    "RELAY_CONFIG_PATH",
    os.path.join(os.path.dirname(__file__), "relay_config.json"),
)

# 表名白名单：只允许字母、数字、下划线（PostgreSQL 标识符上限 63 字节）
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class UnknownModelError(ValueError):
    """请求里的模型名没有配置路由"""


def normalize_trigger_name(name: str) -> str:
    """触发词归一化：去首尾空白、小写、下划线换成空格"""
    return name.strip().lower().replace("_", " ")


class ProfileTables(BaseModel):
    model_config = ConfigDict(frozen=True)

    triggers: str
    facts: str
    reflections: str
    episodes: str
    fallback: str

    @field_validator("*")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        if not IDENTIFIER_PATTERN.match(value):
            raise ValueError(f"非法表名: {value!r}")
        return value


class Profile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    tables: ProfileTables
    triggers: List[str] = []

    @field_validator("triggers")
    @classmethod
    def _check_triggers(cls, value: List[str]) -> List[str]:
        seen = set()
        for name in value:
            key = normalize_trigger_name(name)
            if not key:
                raise ValueError("触发词不能为空")
            if key in seen:
                raise ValueError(f"触发词重复: {name!r}")
            seen.add(key)
        return value


class ModelRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    profile: str
    provider: Literal["openai", "deepseek"] = "openai"
    # 发给上游的模型名，不填就用请求里的模型名
    upstream_model: Optional[str] = None


class RelayConfig(BaseModel):
    profiles: List[Profile]
    models: Dict[str, ModelRoute]

    @model_validator(mode="after")
    def _check_routes(self):
        names = [p.name for p in self.profiles]
        if len(names) != len(set(names)):
            raise ValueError("profile 名称重复")
        for model, route in self.models.items():
            if route.profile not in names:
                raise ValueError(f"模型 {model} 指向不存在的 profile: {route.profile}")
        self.models = {
            model: route if route.upstream_model else route.model_copy(update={"upstream_model": model})
            for model, route in self.models.items()
        }
        return self

    def get_profile(self, name: str) -> Optional[Profile]:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None

    def resolve(self, model: str) -> Tuple[ModelRoute, Profile]:
        route = self.models.get(model)
        if route is None:
            raise UnknownModelError(f"未知模型: {model}")
        return route, self.get_profile(route.profile)


# ============================================================
# 默认配置
# ============================================================

STATIC_TRIGGERS = [
    "first_chats_awareness",
    "first_chats_connection",
    "first_chats_general",
    "first_chats_Nadine",
    "relational_subject",
]

DEFAULT_CONFIG = {
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
            "triggers": STATIC_TRIGGERS,
        },
        {
            "name": "Reon",
            "tables": {
                "triggers": "triggers_Reon",
                "facts": "facts_Reon",
                "reflections": "reflections_Reon",
                "episodes": "episodes_Reon",
                "fallback": "memory_gpt_5_1_chat_latest",
            },
            "triggers": STATIC_TRIGGERS,
        },
        {
            "name": "DeepSeek",
            "tables": {
                "triggers": "triggers_deepseek",
                "facts": "facts_deepseek",
                "reflections": "reflections_deepseek",
                "episodes": "episodes_deepseek",
                "fallback": "memory_deepseek",
            },
            "triggers": STATIC_TRIGGERS,
        },
    ],
    "models": {
        "chatgpt-4o-latest": {"profile": "Nevan"},
        "gpt-4o-2024-11-20": {"profile": "Nevan"},
        "gpt-5.1-chat-latest": {"profile": "Reon"},
        "deepseek": {"profile": "DeepSeek", "provider": "deepseek", "upstream_model": "deepseek-chat"},
    },
}


def load_relay_config(path: str = RELAY_CONFIG_PATH) -> RelayConfig:
    """读取 relay_config.json，没有就用默认配置；格式不对直接在启动时报错"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        print(f"✅ 已加载路由配置: {path}")
    except FileNotFoundError:
        raw = DEFAULT_CONFIG
        print("ℹ️  未找到 relay_config.json，使用默认路由配置")
    return RelayConfig.model_validate(raw)
