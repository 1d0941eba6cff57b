# backend/main.py
# 功能: FastAPI应用入口
# 主要函数: _setup_logging(), create_app()
# 数据结构: 无

"""
AI Marisa Playground - Backend Entry Point
启动命令: python main.py
"""

import sys
import os
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from core.config import settings


# ===== 日志配置 =====
def _setup_logging():
    """配置应用日志，业务模块按 settings.debug 输出 DEBUG"""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"
    datefmt = "%H:%M:%S"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    for name in (
        "data_labeling", "ingestion", "task_allocator", "consolidation",
        "export", "auth", "admin", "playgrounds", "playground_service",
        "security", "permissions", "storage", "startup",
    ):
        lg = logging.getLogger(name)
        lg.setLevel(log_level)
        if not lg.handlers:
            lg.addHandler(handler)
        lg.propagate = False  # 避免重复输出

    # root logger 保持 INFO（避免 SQLAlchemy 等噪音）
    logging.basicConfig(level=logging.INFO, format=fmt, datefmt=datefmt)


_setup_logging()


def _ensure_db_schema_on_startup():
    """启动时创建缺失的表"""
    from core.database import init_db
    init_db()
    logging.getLogger("startup").info("数据库 schema 校验完成")


def create_app() -> FastAPI:
    """创建FastAPI应用实例"""
    app = FastAPI(
        title="AI Marisa Playground",
        description="数据标注任务池：批量导入、分配、合并与导出",
        version="0.1.0",
    )

    # 注意：allow_origins 必须在 allow_credentials=True 时明确指定，不能用 ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    # 健康检查
    @app.get("/health")
    async def health_check():
        return {"status": "ok", "message": "AI Marisa Playground is running"}

    # 注册路由（前缀已在各模块中定义）
    from api import auth, admin, playgrounds, data_labeling

    app.include_router(auth.router)
    app.include_router(admin.router)
    app.include_router(playgrounds.router)
    app.include_router(data_labeling.router)

    # 上传文件的公开访问（LocalBlobStorage 根目录）
    os.makedirs(settings.storage_dir, exist_ok=True)
    app.mount("/files", StaticFiles(directory=settings.storage_dir), name="files")

    @app.on_event("startup")
    def on_startup():
        _ensure_db_schema_on_startup()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=settings.debug,
    )
