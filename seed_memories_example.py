"""
预置记忆导入示例
================
触发词、facts、reflections 不会在聊天流程里创建，只能从这里导入。
部署后访问 /import/seed-memories?profile=人设名 即可一次性导入。

使用方法：
1. 复制此文件为 seed_memories.py
2. 修改 SEED_MEMORIES 列表（name 要和 relay_config 里的触发词一致）
3. 部署后访问 /import/seed-memories?profile=Nevan
"""

import database
from relay_config import Profile

SEED_MEMORIES = [
    # ======== 每个触发词一组（改成你自己的） ========
    {
        "trigger": "relational_subject",
        "facts": [
            {"name": "relationship", "content": "The user and the agent have talked since the first chats"},
            {"name": "tone", "content": "The user prefers warm, direct answers"},
        ],
        "reflections": [
            "Conversations about the relationship matter more than small talk",
        ],
    },
    {
        "trigger": "first_chats_general",
        "facts": [
            {"name": "first_topic", "content": "The first chats were about learning to use the memory relay"},
        ],
        "reflections": [],
    },

    # ======== 在这里继续添加更多触发词 ========
]


async def run_seed_import(profile: Profile, seeds=SEED_MEMORIES, store=database):
    """执行导入（自动跳过已存在的 fact / reflection）"""
    tables = profile.tables
    imported = 0
    skipped = 0

    for seed in seeds:
        trigger_id = await store.ensure_trigger(tables, seed["trigger"])

        for fact in seed.get("facts", []):
            if await store.has_fact(tables, trigger_id, fact["name"], fact["content"]):
                skipped += 1
                continue
            await store.save_fact(tables, trigger_id, fact["name"], fact["content"])
            imported += 1

        for content in seed.get("reflections", []):
            if await store.has_reflection(tables, trigger_id, content):
                skipped += 1
                continue
            await store.save_reflection(tables, trigger_id, content)
            imported += 1

    print(f"💾 预置记忆导入完成: {profile.name} 新增 {imported} 条，跳过 {skipped} 条")
    return {
        "status": "done",
        "profile": profile.name,
        "triggers": len(seeds),
        "imported": imported,
        "skipped": skipped,
    }
