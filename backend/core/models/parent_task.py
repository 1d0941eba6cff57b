# backend/core/models/parent_task.py
# 功能: Data labeling 任务模型（一个上传文件 = 一个 ParentTask）
# 主要类: ParentTask, ParentTaskEvaluation, ParentTaskAssignment
# 数据结构:
#   - status: active / consolidated / ignored / returned_to_pipe
#   - max_repetitions + extra_repetitions = 当前重复配额
#   - current_repetitions: 已记录的评估次数
#   - ParentTaskAssignment: 分配预留（assigned / completed / expired）

"""
ParentTask 模型

状态机:
  active ──consolidate──▶ consolidated ──deconsolidate──▶ active
  active ──ignore──▶ ignored ──consolidate──▶ consolidated
  active / ignored ──return_to_pipe──▶ returned_to_pipe（仍可分配，直到管理员再次处理）
  consolidated 上的 ignore / return_to_pipe 被拒绝，需先 deconsolidate
"""

from datetime import datetime
from typing import Optional, List, TYPE_CHECKING

from sqlalchemy import String, Text, Integer, ForeignKey, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.models.base import BaseModel

if TYPE_CHECKING:
    from core.models.playground import Playground
    from core.models.consolidated_answer import ConsolidatedAnswer


PARENT_TASK_STATUS = {
    "active": "进行中",
    "consolidated": "已合并",
    "ignored": "已排除",
    "returned_to_pipe": "已退回（追加重复次数）",
}

# 可以被分配给评估员的状态
ASSIGNABLE_STATUSES = ("active", "returned_to_pipe")

FILE_TYPES = {
    "image": "图片",
    "pdf": "PDF 文档",
    "text": "纯文本",
}

ASSIGNMENT_STATUS = {
    "assigned": "已分配",
    "completed": "已提交",
    "expired": "已过期",
}


class ParentTask(BaseModel):
    """数据标注任务"""

    __tablename__ = "parent_tasks"

    playground_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playgrounds.id"), nullable=False, index=True
    )

    # 文件
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str] = mapped_column(String(16), nullable=False)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # 重复配额
    max_repetitions: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_repetitions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    extra_repetitions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # 状态与合并信息
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False, index=True)
    consolidated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    consolidated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ignore_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    playground: Mapped["Playground"] = relationship("Playground", back_populates="parent_tasks")
    evaluations: Mapped[List["ParentTaskEvaluation"]] = relationship(
        "ParentTaskEvaluation",
        back_populates="parent_task",
        order_by="ParentTaskEvaluation.evaluated_at",
    )
    consolidated_answers: Mapped[List["ConsolidatedAnswer"]] = relationship(
        "ConsolidatedAnswer",
        back_populates="parent_task",
    )

    @property
    def total_repetitions(self) -> int:
        """当前配额（初始 + 退回追加）"""
        return (self.max_repetitions or 0) + (self.extra_repetitions or 0)


class ParentTaskEvaluation(BaseModel):
    """一次完整评估（评估员 × 任务 × session）"""

    __tablename__ = "parent_task_evaluations"

    parent_task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("parent_tasks.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    parent_task: Mapped["ParentTask"] = relationship("ParentTask", back_populates="evaluations")


class ParentTaskAssignment(BaseModel):
    """
    分配预留
    assigned 状态且未过期的预留计入任务配额，防止同一任务被超额分配
    """

    __tablename__ = "parent_task_assignments"
    __table_args__ = (
        Index("ix_assignment_task_status", "parent_task_id", "status"),
    )

    parent_task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("parent_tasks.id"), nullable=False, index=True
    )
    playground_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), default="assigned", nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
