# backend/core/config.py
# 功能: 应用配置管理，从环境变量加载配置
# 主要类: Settings
# 数据结构: Settings(BaseSettings)

"""
配置管理模块
使用 pydantic-settings 从 .env 文件加载配置
"""

from typing import List

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """应用配置"""

    # Database
    database_url: str = "sqlite:///./data/marisa_playground.db"

    # Auth（JWT + 邮箱一次性验证码）
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = 7
    allowed_email_domain: str = "marisa.care"
    otp_expire_minutes: int = 10

    # Blob storage（本地目录，按 bucket 分子目录）
    storage_dir: str = "./data/storage"
    storage_public_base_url: str = "http://localhost:8000/files"
    storage_bucket: str = "data-labeling-files"

    # Data labeling
    max_upload_mb: int = 100
    assignment_ttl_minutes: int = 30

    # Server
    backend_port: int = 8000
    debug: bool = True
    cors_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()


settings = get_settings()
