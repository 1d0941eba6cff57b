# backend/core/ingestion.py
# 功能: ZIP 批量导入 - 每个合法文件上传到存储并创建一个 ParentTask
# 主要函数: classify_file(), should_skip_entry(), ingest_archive()
# 数据结构: IngestionResult (dataclass)
#
# 语义:
#   - 目录、隐藏文件、__MACOSX 条目跳过
#   - 扩展名不在白名单、上传失败、写库失败的条目跳过，不影响其它条目
#   - 每个任务单独提交，中途失败不回滚已创建的任务
#   - ZIP 本身无法解析 → ArchiveError，整个请求失败

"""
Data labeling 批量导入
"""

import io
import logging
import os
import time
import uuid
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.errors import StorageError
from core.models import ParentTask, Playground

logger = logging.getLogger("ingestion")


IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif"}
DOCUMENT_EXTENSIONS = {".pdf"}
TEXT_EXTENSIONS = {".txt"}
VALID_EXTENSIONS = IMAGE_EXTENSIONS | DOCUMENT_EXTENSIONS | TEXT_EXTENSIONS


class ArchiveError(Exception):
    """上传的压缩包无法读取"""


@dataclass
class IngestionResult:
    """导入结果"""
    parent_tasks: List[ParentTask] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.parent_tasks)


def classify_file(file_name: str) -> Optional[str]:
    """按扩展名归类为 image / pdf / text，不支持的返回 None"""
    ext = os.path.splitext(file_name)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in DOCUMENT_EXTENSIONS:
        return "pdf"
    if ext in TEXT_EXTENSIONS:
        return "text"
    return None


def content_type_for(file_name: str, file_type: str) -> str:
    if file_type == "image":
        ext = os.path.splitext(file_name)[1].lower().lstrip(".")
        return f"image/{'jpeg' if ext == 'jpg' else ext}"
    if file_type == "pdf":
        return "application/pdf"
    return "text/plain"


def should_skip_entry(info: zipfile.ZipInfo) -> bool:
    """目录、隐藏文件、macOS 资源分叉目录跳过"""
    if info.is_dir():
        return True
    path = PurePosixPath(info.filename)
    if any(part.startswith("__MACOSX") for part in path.parts):
        return True
    return path.name.startswith(".") or not path.name


def _storage_path(playground_id: str, file_name: str) -> str:
    """<池ID>/<毫秒时间戳>_<短随机串>_<原文件名>"""
    return f"{playground_id}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}_{file_name}"


def ingest_archive(
    db: Session,
    storage,
    playground: Playground,
    data: bytes,
    bucket: str,
) -> IngestionResult:
    """
    展开 ZIP 并为每个合法文件创建任务

    Args:
        db: 数据库会话（本函数逐条 commit）
        storage: 提供 upload(bucket, path, data, content_type) / public_url(bucket, path)
        playground: 目标 data_labeling 池
        data: ZIP 原始字节
        bucket: 存储 bucket 名

    Returns:
        IngestionResult: 创建的任务与跳过的条目名
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
        entries = archive.infolist()
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"Failed to read ZIP archive: {e}")

    repetitions = playground.effective_repetitions
    result = IngestionResult()
    logger.info(f"[导入] 池 {playground.id} 共 {len(entries)} 个条目")

    with archive:
        for info in entries:
            if should_skip_entry(info):
                continue

            file_name = PurePosixPath(info.filename).name
            file_type = classify_file(file_name)
            if not file_type:
                logger.debug(f"[导入] 扩展名不支持，跳过 {info.filename}")
                result.skipped.append(info.filename)
                continue

            try:
                payload = archive.read(info)
            except (zipfile.BadZipFile, OSError, RuntimeError) as e:
                logger.warning(f"[导入] 读取条目失败，跳过 {info.filename}: {e}")
                result.skipped.append(info.filename)
                continue

            path = _storage_path(playground.id, file_name)
            try:
                storage.upload(bucket, path, payload, content_type_for(file_name, file_type))
            except StorageError as e:
                logger.error(f"[导入] 上传失败 {file_name}: {e}")
                result.skipped.append(info.filename)
                continue

            task = ParentTask(
                playground_id=playground.id,
                file_name=file_name,
                file_type=file_type,
                file_url=storage.public_url(bucket, path),
                file_size=len(payload),
                max_repetitions=repetitions,
                current_repetitions=0,
                extra_repetitions=0,
                status="active",
            )
            try:
                db.add(task)
                db.commit()
                db.refresh(task)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[导入] 创建任务失败 {file_name}: {e}")
                result.skipped.append(info.filename)
                continue

            result.parent_tasks.append(task)

    if playground.auto_calculate_evaluations:
        playground.evaluation_goal = result.count * repetitions
        db.commit()
        logger.info(f"[导入] 池 {playground.id} evaluation_goal → {playground.evaluation_goal}")

    logger.info(f"[导入] 池 {playground.id} 创建 {result.count} 个任务，跳过 {len(result.skipped)} 个")
    return result
