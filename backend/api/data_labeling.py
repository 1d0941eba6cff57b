# backend/api/data_labeling.py
# 功能: Data labeling API - 批量导入、任务分配、评估记录、合并、导出
# 主要端点:
#   POST /data-labeling/upload-zip/{playground_id}         - ZIP 批量创建任务（admin）
#   GET  /data-labeling/next-task/{playground_id}          - 领取下一个任务
#   POST /data-labeling/record-evaluation                  - 记录一次完整评估
#   GET  /data-labeling/metrics/{playground_id}            - 池级进度
#   GET  /data-labeling/parent-tasks/{playground_id}       - 列出全部任务（admin）
#   GET  /data-labeling/consolidation/{parent_task_id}     - 任务 + 全部评估（admin）
#   POST /data-labeling/consolidate                        - consolidate / ignore / return_to_pipe（admin）
#   POST /data-labeling/deconsolidate                      - 撤销合并（admin）
#   GET  /data-labeling/task-metrics/{parent_task_id}      - 单任务进度（admin）
#   GET  /data-labeling/export-consolidated/{playground_id}?format=json|csv|xlsx（admin）

"""
Data Labeling API
"""

import io
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel as PydanticBase
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.consolidation import (
    CONSOLIDATION_ACTIONS,
    consolidate_parent_task,
    deconsolidate_parent_task,
    get_consolidation_data,
    ignore_parent_task,
    return_parent_task_to_pipe,
)
from core.database import get_db
from core.errors import NotFoundError, WorkflowValidationError
from core.export import (
    XLSX_MEDIA_TYPE,
    build_consolidated_dataset,
    to_csv,
    to_json_items,
    to_xlsx,
    validate_format,
)
from core.ingestion import ArchiveError, ingest_archive
from core.metrics import get_data_labeling_metrics, get_task_metrics
from core.models import ParentTask, Playground, User
from core.permissions import require_permission
from core.playground_access import user_has_playground_access
from core.storage import get_storage
from core.task_allocator import get_next_parent_task, record_parent_task_evaluation

logger = logging.getLogger("data_labeling")

router = APIRouter(prefix="/data-labeling", tags=["data-labeling"])


# ============== Schemas ==============

class RecordEvaluationRequest(PydanticBase):
    parent_task_id: Optional[str] = None
    session_id: Optional[str] = None


class ConsolidateRequest(PydanticBase):
    parent_task_id: Optional[str] = None
    action: Optional[str] = None
    admin_notes: Optional[str] = None
    ignore_reason: Optional[str] = None
    extra_repetitions: Optional[int] = None
    consolidated_answers: Optional[list] = None


class DeconsolidateRequest(PydanticBase):
    parent_task_id: Optional[str] = None


# ============== Endpoints ==============

@router.post("/upload-zip/{playground_id}")
def upload_zip(
    playground_id: str,
    zipFile: Optional[UploadFile] = File(None),
    user: User = Depends(require_permission("pool.ingest")),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    """上传 ZIP，每个合法文件创建一个 ParentTask"""
    if zipFile is None:
        raise HTTPException(status_code=400, detail="No file uploaded")

    limit = settings.max_upload_mb * 1024 * 1024
    data = zipFile.file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=413, detail=f"File exceeds {settings.max_upload_mb}MB limit")

    try:
        playground = db.query(Playground).filter(Playground.id == playground_id).first()
    except SQLAlchemyError as e:
        logger.error(f"[导入] 读取池 {playground_id} 失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch playground: {e}")
    if not playground:
        raise HTTPException(status_code=404, detail="Playground not found")
    if playground.type != "data_labeling":
        raise HTTPException(status_code=400, detail="Playground must be data_labeling type")

    logger.info(
        f"[导入] {user.email} 上传 {zipFile.filename} ({len(data)} bytes) → 池 {playground_id}"
    )
    try:
        result = ingest_archive(db, storage, playground, data, settings.storage_bucket)
    except ArchiveError as e:
        logger.error(f"[导入] ZIP 解析失败: {e}")
        raise HTTPException(status_code=500, detail="Failed to process ZIP file")

    return {
        "message": f"Successfully created {result.count} parent tasks",
        "parent_tasks": [t.to_dict() for t in result.parent_tasks],
    }


@router.get("/next-task/{playground_id}")
def next_task(
    playground_id: str,
    user: User = Depends(require_permission("pool.evaluate")),
    db: Session = Depends(get_db),
):
    """领取下一个任务；没有可分配任务时 404"""
    decision = user_has_playground_access(db, user, playground_id)
    if not decision.has_access:
        raise HTTPException(status_code=403, detail="Access denied to this playground")

    try:
        task = get_next_parent_task(db, playground_id, user.id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[分配] 领取任务失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get next task: {e}")

    if not task:
        raise HTTPException(status_code=404, detail="No available tasks")

    return {
        "parent_task_id": task.id,
        "file_name": task.file_name,
        "file_type": task.file_type,
        "file_url": task.file_url,
    }


@router.post("/record-evaluation")
def record_evaluation(
    data: RecordEvaluationRequest,
    user: User = Depends(require_permission("pool.evaluate")),
    db: Session = Depends(get_db),
):
    if not data.parent_task_id or not data.session_id:
        raise HTTPException(status_code=400, detail="parent_task_id and session_id are required")

    try:
        evaluation = record_parent_task_evaluation(db, data.parent_task_id, user.id, data.session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"[评估] 记录失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to record evaluation: {e}")

    return {"success": True, "evaluation": evaluation.to_dict()}


@router.get("/metrics/{playground_id}")
def playground_metrics(
    playground_id: str,
    user: User = Depends(require_permission("pool.metrics")),
    db: Session = Depends(get_db),
):
    try:
        return get_data_labeling_metrics(db, playground_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"[统计] 池 {playground_id} 统计失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get metrics: {e}")


@router.get("/parent-tasks/{playground_id}")
def list_parent_tasks(
    playground_id: str,
    user: User = Depends(require_permission("task.list")),
    db: Session = Depends(get_db),
):
    try:
        tasks = db.query(ParentTask).filter(
            ParentTask.playground_id == playground_id
        ).order_by(ParentTask.created_at.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"[合并] 池 {playground_id} 任务列表读取失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch parent tasks: {e}")
    return [t.to_dict() for t in tasks]


@router.get("/consolidation/{parent_task_id}")
def consolidation_detail(
    parent_task_id: str,
    user: User = Depends(require_permission("task.review")),
    db: Session = Depends(get_db),
):
    try:
        return get_consolidation_data(db, parent_task_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"[合并] 任务 {parent_task_id} 读取评估失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch consolidation data: {e}")


@router.post("/consolidate")
def consolidate(
    data: ConsolidateRequest,
    user: User = Depends(require_permission("task.consolidate")),
    db: Session = Depends(get_db),
):
    """
    合并决定（action 三选一）:
    - consolidate: consolidated_answers 必填
    - ignore: ignore_reason 必填
    - return_to_pipe: extra_repetitions >= 1
    """
    if not data.parent_task_id or not data.action:
        raise HTTPException(status_code=400, detail="parent_task_id and action are required")
    if data.action not in CONSOLIDATION_ACTIONS:
        raise HTTPException(
            status_code=400,
            detail='Invalid action. Must be "consolidate", "ignore", or "return_to_pipe"',
        )

    try:
        if data.action == "consolidate":
            consolidate_parent_task(
                db, data.parent_task_id, data.consolidated_answers, user.id, data.admin_notes
            )
            result = "consolidated"
        elif data.action == "ignore":
            ignore_parent_task(db, data.parent_task_id, data.ignore_reason, user.id)
            result = "ignored"
        else:
            return_parent_task_to_pipe(
                db, data.parent_task_id, data.extra_repetitions, user.id, data.admin_notes
            )
            result = "returned_to_pipe"
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"[合并] {data.action} 任务 {data.parent_task_id} 失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to {data.action} task: {e}")

    return {"success": True, "action": result}


@router.post("/deconsolidate")
def deconsolidate(
    data: DeconsolidateRequest,
    user: User = Depends(require_permission("task.consolidate")),
    db: Session = Depends(get_db),
):
    if not data.parent_task_id:
        raise HTTPException(status_code=400, detail="parent_task_id is required")

    try:
        deconsolidate_parent_task(db, data.parent_task_id)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"[合并] 撤销合并 {data.parent_task_id} 失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to deconsolidate task: {e}")

    logger.info(f"[合并] {user.email} 撤销合并 {data.parent_task_id}")
    return {"success": True, "message": "Task deconsolidated successfully"}


@router.get("/task-metrics/{parent_task_id}")
def task_metrics(
    parent_task_id: str,
    user: User = Depends(require_permission("task.review")),
    db: Session = Depends(get_db),
):
    try:
        task = db.query(ParentTask).filter(ParentTask.id == parent_task_id).first()
    except SQLAlchemyError as e:
        logger.error(f"[统计] 任务 {parent_task_id} 读取失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch parent task: {e}")
    if not task:
        raise HTTPException(status_code=404, detail="Parent task not found")

    metrics = get_task_metrics(task)
    metrics["file_name"] = task.file_name
    metrics["file_type"] = task.file_type
    return metrics


@router.get("/export-consolidated/{playground_id}")
def export_consolidated(
    playground_id: str,
    format: str = Query("json"),
    user: User = Depends(require_permission("task.export")),
    db: Session = Depends(get_db),
):
    """导出全部 consolidated 任务；一个都没有时 404"""
    try:
        fmt = validate_format(format)
        records = build_consolidated_dataset(db, playground_id)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"[导出] 读取失败: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch consolidated tasks: {e}")

    logger.info(f"[导出] {user.email} 导出池 {playground_id} ({len(records)} 条, {fmt})")

    if fmt == "json":
        return {
            "playground_id": playground_id,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "total_items": len(records),
            "data": to_json_items(records),
        }

    filename = f"dataset-consolidado-{playground_id}.{fmt}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if fmt == "csv":
        return StreamingResponse(
            iter([to_csv(records)]),
            media_type="text/csv",
            headers=headers,
        )
    return StreamingResponse(
        io.BytesIO(to_xlsx(records)),
        media_type=XLSX_MEDIA_TYPE,
        headers=headers,
    )
