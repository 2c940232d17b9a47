from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Iterable, Mapping, Optional

from app.schemas.review import ReviewError, ServiceResult

logger = logging.getLogger("fronsci.review_errors")


class ReviewWorkflowError(Exception):
    """
    审稿流程领域异常基类。

    中文注释:
    - 服务内部 raise，公开方法边界统一转成 ServiceResult（调用方拿到的是结构化结果，不是异常）。
    - retryable=True 的错误（overloaded / oracle_unavailable）调用方可以换 deterministic 策略重试。
    """

    category = "review_error"
    code = "review_error"
    status_code = 400
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        reasons: Optional[Iterable[str]] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.reasons = list(reasons or [])
        self.details = dict(details or {})

    def to_error(self) -> ReviewError:
        return ReviewError(
            category=self.category,
            code=self.code,
            message=self.message,
            reasons=self.reasons,
            retryable=self.retryable,
            details=self.details,
            status_code=self.status_code,
        )


class NotFoundError(ReviewWorkflowError):
    category = "not_found"
    code = "not_found"
    status_code = 404


class IneligibleError(ReviewWorkflowError):
    """is_author / already_reviewed / reviewer_not_qualified / not_assigned_reviewer / reviewer_unavailable"""

    category = "ineligible"
    code = "ineligible"
    status_code = 403


class NoQualifiedReviewersError(ReviewWorkflowError):
    category = "no_qualified_reviewers"
    code = "no_qualified_reviewers"
    status_code = 409


class OverloadedError(ReviewWorkflowError):
    category = "overloaded"
    code = "all_overloaded"
    status_code = 409
    retryable = True


class OracleUnavailableError(ReviewWorkflowError):
    category = "oracle_unavailable"
    code = "oracle_unavailable"
    status_code = 503
    retryable = True


class ConflictingTransitionError(ReviewWorkflowError):
    category = "conflicting_transition"
    code = "conflicting_transition"
    status_code = 409


class ValidationFailedError(ReviewWorkflowError):
    category = "validation_error"
    code = "validation_error"
    status_code = 422


def returns_service_result(fn: Callable[..., Any]) -> Callable[..., ServiceResult]:
    """Run a service operation and wrap its outcome (or its ReviewWorkflowError) in a ServiceResult."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> ServiceResult:
        try:
            return ServiceResult.ok(fn(*args, **kwargs))
        except ReviewWorkflowError as exc:
            logger.info("[%s] rejected (%s): %s", fn.__qualname__, exc.code, exc.message)
            return ServiceResult.fail(exc.to_error())

    return wrapper
