"""
Sub-Shop 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_SECONDS = int(os.getenv("EXPIRY_SWEEP_SECONDS", "60"))


# ── 后台任务 ──────────────────────────────────────────────

async def _subscription_expiry_task() -> None:
    """定期把已过结束时间的订阅标记为过期（默认每 60 秒）。"""
    from subshop.services.subscription_service import SubscriptionService

    svc = SubscriptionService()
    while True:
        try:
            svc.expire_subscriptions()
            logger.debug("订阅过期检查完成")
        except Exception as e:
            logger.error("订阅过期检查异常: %s", e)
        await asyncio.sleep(EXPIRY_SWEEP_SECONDS)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from subshop.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_subscription_expiry_task()))
        logger.info("后台任务已启动：订阅过期检查")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Sub-Shop", description="订阅与凭证交付平台", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from subshop.routes.shop import router as shop_router
from subshop.routes.wholesale import router as wholesale_router
from subshop.routes.admin import router as admin_router

app.include_router(shop_router)
app.include_router(wholesale_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
