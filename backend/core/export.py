# backend/core/export.py
# 功能: 导出已合并的数据集（json / csv / xlsx）
# 主要函数:
#   build_consolidated_dataset() - 读取池中全部 consolidated 任务及其权威答案
#   question_headers()           - 问题列名（JSON 的 answers 键与 CSV/XLSX 表头一致）
#   flatten_dataset()            - 每个任务一行，问题文本作为列（所有任务问题的并集）
#   to_csv(), to_xlsx()          - 序列化
# 数据结构: ExportRecord (dataclass)

"""
数据集导出
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy.orm import Session, selectinload

from core.errors import NotFoundError, WorkflowValidationError
from core.models import ConsolidatedAnswer, ParentTask

logger = logging.getLogger("export")


EXPORT_FORMATS = ("json", "csv", "xlsx")
FIXED_COLUMNS = ["file_name", "file_type", "file_url", "consolidated_at", "admin_notes"]
XLSX_SHEET_NAME = "Dataset Consolidado"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass
class ExportRecord:
    """一个已合并任务 + 它的答案（按问题顺序）"""
    parent_task_id: str
    file_name: str
    file_type: str
    file_url: str
    consolidated_at: Optional[str]
    admin_notes: Optional[str]
    # [(question_id, question_text, value)]
    answers: List[Tuple[str, str, Optional[str]]] = field(default_factory=list)

    def to_dict(self, headers: Optional[Dict[str, str]] = None) -> dict:
        """headers: question_id → 列名；不传时直接用问题文本"""
        headers = headers or {}
        return {
            "parent_task_id": self.parent_task_id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_url": self.file_url,
            "consolidated_at": self.consolidated_at,
            "admin_notes": self.admin_notes,
            "answers": {headers.get(qid, text): value for qid, text, value in self.answers},
        }


def validate_format(export_format: str) -> str:
    fmt = (export_format or "json").lower()
    if fmt not in EXPORT_FORMATS:
        raise WorkflowValidationError("Invalid format. Use json, csv, or xlsx")
    return fmt


def build_consolidated_dataset(db: Session, playground_id: str) -> List[ExportRecord]:
    """
    读取池中所有 consolidated 任务

    Raises:
        NotFoundError: 池中没有已合并任务
    """
    tasks = db.query(ParentTask).options(
        selectinload(ParentTask.consolidated_answers).selectinload(ConsolidatedAnswer.question)
    ).filter(
        ParentTask.playground_id == playground_id,
        ParentTask.status == "consolidated",
    ).order_by(ParentTask.consolidated_at.asc(), ParentTask.id.asc()).all()

    if not tasks:
        raise NotFoundError("No consolidated tasks found")

    records = []
    for task in tasks:
        answers = sorted(
            task.consolidated_answers,
            key=lambda a: (a.question.order_index if a.question else 0, a.question_id),
        )
        records.append(ExportRecord(
            parent_task_id=task.id,
            file_name=task.file_name,
            file_type=task.file_type,
            file_url=task.file_url,
            consolidated_at=task.consolidated_at.isoformat() if task.consolidated_at else None,
            admin_notes=task.admin_notes,
            answers=[
                (a.question_id, a.question.question_text if a.question else a.question_id, a.exported_value)
                for a in answers
            ],
        ))

    logger.info(f"[导出] 池 {playground_id} 共 {len(records)} 个已合并任务")
    return records


def question_headers(records: List[ExportRecord]) -> Dict[str, str]:
    """
    question_id → 列名（按首次出现顺序）

    问题文本重复或与固定列同名时追加 " (2)"、" (3)"
    """
    headers: Dict[str, str] = {}
    used = set(FIXED_COLUMNS)
    for record in records:
        for question_id, text, _ in record.answers:
            if question_id in headers:
                continue
            header = text
            suffix = 2
            while header in used:
                header = f"{text} ({suffix})"
                suffix += 1
            headers[question_id] = header
            used.add(header)
    return headers


def to_json_items(records: List[ExportRecord]) -> List[dict]:
    headers = question_headers(records)
    return [r.to_dict(headers) for r in records]


def flatten_dataset(records: List[ExportRecord]) -> Tuple[List[str], List[Dict[str, str]]]:
    """
    展平为表格

    Returns:
        (表头, 行): 表头 = 固定列 + 问题列（按首次出现顺序）；
        某任务没有回答的问题不出现在该行中
    """
    headers = question_headers(records)
    rows = []

    for record in records:
        row = {
            "file_name": record.file_name,
            "file_type": record.file_type,
            "file_url": record.file_url,
            "consolidated_at": record.consolidated_at or "",
            "admin_notes": record.admin_notes or "",
        }
        for question_id, _, value in record.answers:
            row[headers[question_id]] = value if value is not None else ""
        rows.append(row)

    return FIXED_COLUMNS + list(headers.values()), rows


def to_csv(records: List[ExportRecord]) -> str:
    columns, rows = flatten_dataset(records)
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=columns, restval="")
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


def to_xlsx(records: List[ExportRecord]) -> bytes:
    columns, rows = flatten_dataset(records)
    frame = pd.DataFrame(rows, columns=columns).fillna("")
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        frame.to_excel(writer, sheet_name=XLSX_SHEET_NAME, index=False)
    return buffer.getvalue()
