"""
AI Memory Relay — 带触发词记忆的 LLM 聊天中转
=============================================
工作原理：
1. 接收前端发来的 {model, userMessage}
2. 按模型找到人设档案，检测触发词，读取对应的长期记忆
3. 拼上最近对话历史，转发给 LLM（OpenAI / DeepSeek）
4. 解析回复里的 [[remember]]，存对话记录，需要时存成长期记忆
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from chat_relay import HISTORY_LIMIT, ChatRelay
from database import close_pool, init_tables
from relay_config import UnknownModelError, load_relay_config

# ============================================================
# 配置项 —— 全部从环境变量读取，部署时在云平台面板里设置
# ============================================================

# 网关端口
PORT = int(os.getenv("PORT", "8080"))

# 允许跨域的前端地址，逗号分隔
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# /api/memory 一次最多返回的条数
MAX_HISTORY_LIMIT = int(os.getenv("MAX_HISTORY_LIMIT", "200"))


# ============================================================
# 人设加载
# ============================================================

def load_system_prompt():
    """从 system_prompt.txt 文件读取人设内容"""
    prompt_path = os.path.join(os.path.dirname(__file__), "system_prompt.txt")
    try:
        with open(prompt_path, "r", encoding="utf-8") as f:
            content = f.read().strip()
            if content:
                return content
    except FileNotFoundError:
        pass
    print("ℹ️  未找到 system_prompt.txt 或文件为空，使用默认人设")
    return ""


SYSTEM_PROMPT = load_system_prompt()
RELAY_CONFIG = load_relay_config()

relay = ChatRelay(RELAY_CONFIG, persona=SYSTEM_PROMPT)


# ============================================================
# 应用生命周期管理
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动时初始化数据库，关闭时断开连接"""
    try:
        await init_tables(RELAY_CONFIG)
    except Exception as e:
        print(f"⚠️  数据库初始化失败: {e}")
        print("⚠️  记忆和历史将不可用，聊天请求会返回 500")

    yield

    await close_pool()


app = FastAPI(title="AI Memory Relay", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def read_json_body(request: Request):
    """读取 JSON 请求体，格式不对返回 None"""
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _is_blank(value) -> bool:
    return not isinstance(value, str) or not value.strip()


# ============================================================
# 健康检查
# ============================================================

@app.get("/", response_class=PlainTextResponse)
async def health_check():
    return "AI Memory Relay is running"


@app.get("/test", response_class=PlainTextResponse)
async def test_route():
    return "test ok"


# ============================================================
# 聊天接口
# ============================================================

@app.post("/api/chat")
async def api_chat(request: Request):
    """核心聊天接口"""
    body = await read_json_body(request)
    if body is None:
        return error_response(400, "请求体必须是 JSON 对象")

    model = body.get("model")
    user_message = body.get("userMessage")
    if _is_blank(model) or _is_blank(user_message):
        return error_response(400, "model 和 userMessage 不能为空")

    try:
        reply = await relay.chat(model, user_message)
    except UnknownModelError as e:
        return error_response(400, str(e))
    except Exception as e:
        print(f"❌ 聊天请求失败: {e}")
        return error_response(500, str(e))

    return {"reply": reply}


# ============================================================
# 记忆管理接口
# ============================================================

def _serialize_rows(rows):
    items = []
    for row in rows:
        item = dict(row)
        if item.get("created_at") is not None:
            item["created_at"] = str(item["created_at"])
        items.append(item)
    return items


@app.post("/api/memory")
async def api_memory(request: Request):
    """查看 / 清空对话记录"""
    body = await read_json_body(request)
    if body is None:
        return error_response(400, "请求体必须是 JSON 对象")

    model = body.get("model")
    action = body.get("action")
    if _is_blank(model):
        return error_response(400, "model 不能为空")
    if action not in ("get", "clear"):
        return error_response(400, f"未知操作: {action}")

    try:
        if action == "get":
            limit = body.get("limit", HISTORY_LIMIT)
            if isinstance(limit, bool) or not isinstance(limit, int) or not 0 < limit <= MAX_HISTORY_LIMIT:
                return error_response(400, f"limit 必须是 1-{MAX_HISTORY_LIMIT} 之间的整数")
            rows = await relay.get_history(model, limit)
            return {"history": _serialize_rows(rows)}

        await relay.clear_history(model)
        return {"ok": True}
    except UnknownModelError as e:
        return error_response(400, str(e))
    except Exception as e:
        print(f"❌ 记忆操作失败: {e}")
        return error_response(500, str(e))


@app.post("/api/memory/search")
async def api_memory_search(request: Request):
    """在对话记录里搜索"""
    body = await read_json_body(request)
    if body is None:
        return error_response(400, "请求体必须是 JSON 对象")

    model = body.get("model")
    query = body.get("query")
    if _is_blank(model) or _is_blank(query):
        return error_response(400, "model 和 query 不能为空")

    try:
        rows = await relay.search_history(model, query.strip())
    except UnknownModelError as e:
        return error_response(400, str(e))
    except Exception as e:
        print(f"❌ 记忆搜索失败: {e}")
        return error_response(500, str(e))

    return {"results": _serialize_rows(rows)}


@app.get("/import/seed-memories")
async def import_seed_memories(profile: str):
    """一次性导入预置记忆（从 seed_memories.py）"""
    target = RELAY_CONFIG.get_profile(profile)
    if target is None:
        return error_response(400, f"未知人设档案: {profile}")
    try:
        from seed_memories import run_seed_import
    except ImportError:
        return error_response(404, "未找到 seed_memories.py，请参考 seed_memories_example.py 创建")
    try:
        return await run_seed_import(target)
    except Exception as e:
        print(f"❌ 预置记忆导入失败: {e}")
        return error_response(500, str(e))


# ============================================================

if __name__ == "__main__":
    import uvicorn
    print(f"🚀 AI Memory Relay 启动中... 端口 {PORT}")
    print(f"📝 人设长度：{len(SYSTEM_PROMPT)} 字符")
    print(f"🤖 已配置模型：{', '.join(RELAY_CONFIG.models)}")
    print(f"👤 人设档案：{', '.join(p.name for p in RELAY_CONFIG.profiles)}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
