import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# 在应用启动前加载环境变量
load_dotenv()

from app.api.v1 import reviews
from app.core.middleware import ExceptionHandlerMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # 中文注释: 关闭时释放 oracle 的 httpx 连接池
    reviews.shutdown_review_services()


app = FastAPI(
    title="Fronsci Review API",
    description="Reviewer assignment, review lifecycle and publication consensus",
    version="1.0.0",
    lifespan=lifespan,
)


def _parse_frontend_origins() -> list[str]:
    """
    解析允许跨域的前端 Origins。

    中文注释:
    - 本地默认: http://localhost:3000
    - 生产/预发: 通过 FRONTEND_ORIGINS 注入（逗号分隔）
    """
    origins: list[str] = []
    for part in (os.environ.get("FRONTEND_ORIGINS") or "").split(","):
        o = (part or "").strip().rstrip("/")
        if o and o not in origins:
            origins.append(o)
    return origins or ["http://localhost:3000"]


# === 中间件配置 ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ExceptionHandlerMiddleware)

# === 路由注册 ===
app.include_router(reviews.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "Fronsci Review API is running", "docs": "/docs"}


@app.get("/health")
async def health_check():
    return {"status": "ok"}
