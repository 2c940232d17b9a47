from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from app.core.config import OracleConfig
from app.core.review_errors import OracleUnavailableError
from app.schemas.reviewer import OracleTier

logger = logging.getLogger("fronsci.oracle")

# score 必须等于三项子分之和（允许少量四舍五入误差）
_SUM_TOLERANCE = 0.5


class OracleSubscores(BaseModel):
    qualification: float = Field(ge=0, le=40, validation_alias=AliasChoices("qualification", "qualificationScore"))
    expertise: float = Field(ge=0, le=35, validation_alias=AliasChoices("expertise", "expertiseScore"))
    availability: float = Field(ge=0, le=25, validation_alias=AliasChoices("availability", "availabilityScore"))


class OracleScore(BaseModel):
    """Validated oracle response. Anything that does not fit is treated as an unavailable oracle."""

    score: float = Field(ge=0, le=100, validation_alias=AliasChoices("score", "overallScore"))
    subscores: OracleSubscores
    tier: OracleTier = Field(validation_alias=AliasChoices("tier", "recommendation"))
    rationale: str = Field(default="", validation_alias=AliasChoices("rationale", "reasoningExplanation"))
    strengths: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _score_is_sum_of_subscores(self) -> "OracleScore":
        total = self.subscores.qualification + self.subscores.expertise + self.subscores.availability
        if abs(total - self.score) > _SUM_TOLERANCE:
            raise ValueError(f"score {self.score} does not equal subscore total {total}")
        return self


class Oracle(Protocol):
    def evaluate(self, candidate: Dict[str, Any], manuscript: Dict[str, Any]) -> OracleScore: ...


def parse_oracle_payload(payload: Any) -> OracleScore:
    if not isinstance(payload, dict):
        raise OracleUnavailableError("Oracle returned a non-object payload", code="oracle_invalid_response")
    # 兼容扁平结构：{"overallScore":..,"qualificationScore":..,...}
    if "subscores" not in payload:
        payload = {**payload, "subscores": payload}
    try:
        return OracleScore.model_validate(payload)
    except ValidationError as e:
        raise OracleUnavailableError(
            "Oracle returned a malformed evaluation",
            code="oracle_invalid_response",
            reasons=[err.get("msg", "") for err in e.errors()],
        ) from e


class HttpOracle:
    """
    外部评分服务客户端（POST JSON）。

    中文注释:
    - 每次调用都带显式超时（OracleConfig.timeout_sec），单个候选人超时不会阻塞其他候选人。
    - 传输错误 / 非 2xx / 非法 JSON / 不符合评分契约，统一抛 OracleUnavailableError，由策略层降级为 0 分。
    """

    def __init__(self, config: OracleConfig, *, client: Optional[httpx.Client] = None) -> None:
        self._config = config
        self._client = client or httpx.Client(timeout=config.timeout_sec, verify=config.verify_tls)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def evaluate(self, candidate: Dict[str, Any], manuscript: Dict[str, Any]) -> OracleScore:
        try:
            resp = self._client.post(
                self._config.url,
                json={"candidate": candidate, "manuscript": manuscript},
                headers=self._headers(),
                timeout=self._config.timeout_sec,
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.TimeoutException as e:
            raise OracleUnavailableError("Oracle timed out", code="oracle_timeout") from e
        except httpx.HTTPError as e:
            raise OracleUnavailableError(f"Oracle request failed: {e}") from e
        except ValueError as e:
            raise OracleUnavailableError("Oracle returned invalid JSON", code="oracle_invalid_response") from e
        return parse_oracle_payload(payload)

    def close(self) -> None:
        self._client.close()
