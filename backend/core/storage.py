# backend/core/storage.py
# 功能: Blob 存储（本地目录实现，按 bucket/路径 存放，提供公开 URL）
# 主要类: LocalBlobStorage
# 主要函数: get_storage() (FastAPI 依赖)

"""
文件存储
上传不覆盖已有对象（与对象存储 upsert=false 语义一致），失败抛 StorageError
"""

import logging
from pathlib import Path, PurePosixPath
from urllib.parse import quote

from core.config import settings
from core.errors import StorageError

logger = logging.getLogger("storage")


class LocalBlobStorage:
    """本地目录 Blob 存储"""

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, bucket: str, path: str) -> Path:
        relative = PurePosixPath(bucket) / PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise StorageError(f"Invalid storage path: {path}")
        return self.root.joinpath(*relative.parts)

    def upload(self, bucket: str, path: str, data: bytes, content_type: str = "") -> str:
        """写入对象，返回存储路径；已存在则失败"""
        target = self._resolve(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as f:
                f.write(data)
        except FileExistsError:
            raise StorageError(f"The resource already exists: {bucket}/{path}")
        except OSError as e:
            raise StorageError(f"Upload failed for {bucket}/{path}: {e}")
        logger.debug(f"[存储] {bucket}/{path} ({len(data)} bytes, {content_type or '-'})")
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/{quote(bucket)}/{quote(path)}"


def get_storage() -> LocalBlobStorage:
    """FastAPI依赖: 获取存储实例"""
    return LocalBlobStorage(settings.storage_dir, settings.storage_public_base_url)
