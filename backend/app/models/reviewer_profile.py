from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class EducationRecord(BaseModel):
    degree: str = ""
    field: str = ""
    institution: str = ""
    start_date: str = ""
    end_date: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce(cls, value):
        return _text(value)


class Publication(BaseModel):
    title: str = ""
    authors: List[str] = Field(default_factory=list)
    venue: str = ""
    date: str = ""

    @field_validator("title", "venue", "date", mode="before")
    @classmethod
    def _coerce(cls, value):
        return _text(value)

    @field_validator("authors", mode="before")
    @classmethod
    def _authors(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [a.strip() for a in value.split(",") if a.strip()]
        return [_text(a) for a in value if _text(a)]


class ExperienceEntry(BaseModel):
    position: str = ""
    company: str = ""
    description: str = ""
    start_date: str = ""
    end_date: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce(cls, value):
        return _text(value)


class ReviewerProfile(BaseModel):
    """
    审稿人档案（来自 CV 抽取结果）。

    中文注释:
    - CV 抽取数据是嵌套且字段可能缺失的；这里在仓储边界一次性校验并给出默认值，
      评估逻辑里不再做零散的存在性判断。
    """

    identity: str
    full_name: str = ""
    institution: str = ""
    field: str = ""
    profession: str = ""
    education: List[EducationRecord] = Field(default_factory=list)
    publications: List[Publication] = Field(default_factory=list)
    experience: List[ExperienceEntry] = Field(default_factory=list)
    available: bool = True

    @field_validator("identity", mode="before")
    @classmethod
    def _identity(cls, value):
        return _text(value)

    @field_validator("full_name", "institution", "field", "profession", mode="before")
    @classmethod
    def _coerce(cls, value):
        return _text(value)

    @field_validator("education", "publications", "experience", mode="before")
    @classmethod
    def _list_or_empty(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return [v for v in value if isinstance(v, (dict, BaseModel))]

    @classmethod
    def from_cv_data(
        cls,
        identity: str,
        cv_data: Optional[Dict[str, Any]],
        *,
        available: bool = True,
    ) -> "ReviewerProfile":
        """
        Map a CV extraction payload (camelCase, nested, partial) onto a profile.

        Expected shape (every key optional)::

            {"selfIdentity": {"fullName", "institution", "field", "profession"},
             "education": [{"degree", "field", "institution", "startDate", "endDate"}],
             "publications": [{"title", "authors", "venue", "date"}],
             "experience": [{"position", "company", "description", "startDate", "endDate"}]}
        """
        data = cv_data if isinstance(cv_data, dict) else {}
        self_identity = data.get("selfIdentity") or data.get("self_identity") or {}
        if not isinstance(self_identity, dict):
            self_identity = {}

        def _dated(rows: Any) -> list[dict[str, Any]]:
            out: list[dict[str, Any]] = []
            for row in rows or []:
                if not isinstance(row, dict):
                    continue
                item = dict(row)
                if "startDate" in item:
                    item.setdefault("start_date", item.pop("startDate"))
                if "endDate" in item:
                    item.setdefault("end_date", item.pop("endDate"))
                out.append(item)
            return out

        return cls(
            identity=identity,
            full_name=self_identity.get("fullName") or self_identity.get("full_name"),
            institution=self_identity.get("institution"),
            field=self_identity.get("field"),
            profession=self_identity.get("profession"),
            education=_dated(data.get("education")),
            publications=[p for p in (data.get("publications") or []) if isinstance(p, dict)],
            experience=_dated(data.get("experience")),
            available=available,
        )

    @property
    def display_name(self) -> str:
        return self.full_name or "Unknown"

    @property
    def display_field(self) -> str:
        return self.field or self.profession or "Unknown"
