# backend/core/models/evaluation.py
# 功能: 评估答案模型（每个问题一行，同一次提交共享 session_id）
# 主要类: Evaluation
# 数据结构:
#   - answer_value: select / boolean 问题的选项值
#   - answer_text: input_string 问题的自由文本
#   - parent_task_id: data labeling 时关联的任务（其它池类型为空）

"""
Evaluation 模型
提交后不可修改；任务被排除时保留（不删除）
"""

from typing import Optional

from sqlalchemy import String, Text, Integer, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import BaseModel


class Evaluation(BaseModel):
    """单个问题的评估答案"""

    __tablename__ = "evaluations"
    __table_args__ = (
        Index("ix_evaluations_session_task", "session_id", "parent_task_id"),
    )

    playground_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playgrounds.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    question_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("questions.id"), nullable=False
    )
    parent_task_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("parent_tasks.id"), nullable=True
    )
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    model_key: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    answer_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    answer_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    time_spent_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
