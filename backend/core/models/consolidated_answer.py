# backend/core/models/consolidated_answer.py
# 功能: 合并答案模型（管理员为每个 (任务, 问题) 确认的权威答案）
# 主要类: ConsolidatedAnswer
# 数据结构:
#   - (parent_task_id, question_id) 唯一
#   - source_evaluation_id: 复制来源的评估答案（管理员手写时为空）

"""
ConsolidatedAnswer 模型
只在 consolidate 中写入，deconsolidate 时整体删除，导出数据集时读取
"""

from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlalchemy import String, Text, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.models.base import BaseModel

if TYPE_CHECKING:
    from core.models.parent_task import ParentTask
    from core.models.playground import Question


class ConsolidatedAnswer(BaseModel):
    """权威答案"""

    __tablename__ = "consolidated_answers"
    __table_args__ = (
        UniqueConstraint("parent_task_id", "question_id", name="uq_consolidated_task_question"),
    )

    parent_task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("parent_tasks.id"), nullable=False, index=True
    )
    question_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("questions.id"), nullable=False
    )
    answer_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    answer_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_evaluation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    consolidated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    consolidated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    parent_task: Mapped["ParentTask"] = relationship("ParentTask", back_populates="consolidated_answers")
    question: Mapped["Question"] = relationship("Question")

    @property
    def exported_value(self) -> Optional[str]:
        """导出值：优先选项值，其次文本"""
        return self.answer_value or self.answer_text
