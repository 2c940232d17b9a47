from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态（审稿核心只关心这四个）。

    中文注释:
    - 状态流转规则在 allowed_next 中显性声明，由服务层统一校验。
    - 达到 quorum 不会自动发布；发布是一个单独授权的操作。
    """

    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    PUBLISHED = "published"
    REJECTED = "rejected"

    @classmethod
    def allowed_next(cls, current: str) -> set[str]:
        """
        - submitted -> under_review / published / rejected
        - under_review -> published / rejected
        - published / rejected are terminal
        """
        c = (current or "").strip().lower()
        if c == cls.SUBMITTED.value:
            return {cls.UNDER_REVIEW.value, cls.PUBLISHED.value, cls.REJECTED.value}
        if c == cls.UNDER_REVIEW.value:
            return {cls.PUBLISHED.value, cls.REJECTED.value}
        return set()


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    if not v:
        return None
    # 兼容旧状态（历史数据）
    legacy_map = {
        "pending_review": ManuscriptStatus.SUBMITTED.value,
        "pending": ManuscriptStatus.SUBMITTED.value,
        "in_review": ManuscriptStatus.UNDER_REVIEW.value,
        "reviewing": ManuscriptStatus.UNDER_REVIEW.value,
    }
    v = legacy_map.get(v, v)

    try:
        return ManuscriptStatus(v).value
    except ValueError:
        return None


class Manuscript(BaseModel):
    """Submitted manuscript as seen by the review workflow."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    abstract: str = ""
    categories: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("categories", "category"),
    )
    author_identity: str = Field(
        validation_alias=AliasChoices("author_identity", "author_wallet", "author_id"),
    )
    status: ManuscriptStatus = ManuscriptStatus.SUBMITTED
    published_by: Optional[str] = None
    published_at: Optional[datetime] = None

    @field_validator("id", "author_identity", mode="before")
    @classmethod
    def _stringify(cls, value):
        return str(value).strip() if value is not None else value

    @field_validator("title", "abstract", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    @field_validator("categories", mode="before")
    @classmethod
    def _split_categories(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return [str(v).strip() for v in value if str(v or "").strip()]

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        if isinstance(value, ManuscriptStatus):
            return value
        return normalize_status(value) or ManuscriptStatus.SUBMITTED.value
