import os
from dataclasses import dataclass
from typing import Optional


ASSIGNMENT_STRATEGIES = ("deterministic", "oracle")


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int, *, min_value: int = 0) -> int:
    raw = (os.environ.get(key) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(min_value, value)


def _env_float(key: str, default: float, *, min_value: float = 0.0) -> float:
    raw = (os.environ.get(key) or "").strip()
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    return max(min_value, value)


@dataclass(frozen=True)
class AppConfig:
    """
    Application environment config.
    """

    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        return AppConfig(
            env=env,
            is_staging=env == "staging",
            supabase_url=supabase_url,
            supabase_key=supabase_key,
        )


# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class ReviewAssignmentConfig:
    """
    Reviewer assignment / consensus rules.

    Notes:
    - workload cap, quorum and accept threshold are configurable but default to 3 / 3 / 2.
    - strategy picks how candidates are scored: "deterministic" (keyword heuristic) or "oracle".
    """

    strategy: str
    workload_cap: int
    quorum: int
    accept_threshold: int
    min_topic_papers: int
    deadline_days: int
    evaluation_workers: int

    @staticmethod
    def from_env() -> "ReviewAssignmentConfig":
        strategy = (os.environ.get("REVIEW_ASSIGNMENT_STRATEGY") or "deterministic").strip().lower()
        if strategy not in ASSIGNMENT_STRATEGIES:
            strategy = "deterministic"

        return ReviewAssignmentConfig(
            strategy=strategy,
            workload_cap=_env_int("REVIEW_WORKLOAD_CAP", 3, min_value=1),
            quorum=_env_int("REVIEW_QUORUM", 3, min_value=1),
            accept_threshold=_env_int("REVIEW_ACCEPT_THRESHOLD", 2, min_value=1),
            min_topic_papers=_env_int("REVIEW_MIN_TOPIC_PAPERS", 3, min_value=0),
            deadline_days=_env_int("REVIEW_DEADLINE_DAYS", 30, min_value=1),
            evaluation_workers=_env_int("REVIEW_EVALUATION_WORKERS", 8, min_value=1),
        )


@dataclass(frozen=True)
class OracleConfig:
    """
    External scoring service used by the oracle assignment strategy.

    Returns None when REVIEW_ORACLE_URL is not set; the oracle strategy is then unavailable
    and callers should fall back to the deterministic strategy.
    """

    url: str
    api_key: Optional[str]
    timeout_sec: float
    verify_tls: bool

    @staticmethod
    def from_env() -> Optional["OracleConfig"]:
        url = (os.environ.get("REVIEW_ORACLE_URL") or "").strip()
        if not url:
            return None

        api_key = (os.environ.get("REVIEW_ORACLE_API_KEY") or "").strip() or None

        return OracleConfig(
            url=url,
            api_key=api_key,
            timeout_sec=_env_float("REVIEW_ORACLE_TIMEOUT_SEC", 20.0, min_value=1.0),
            verify_tls=_env_bool("REVIEW_ORACLE_VERIFY_TLS", True),
        )
