import logging
import os
from dataclasses import dataclass


def bool_env(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "on"}


def int_env(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    return int(v) if v else default


def float_env(name: str, default: float) -> float:
    v = (os.environ.get(name) or "").strip()
    return float(v) if v else default


def str_env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    webhook_secret: str = ""
    github_api: str = "https://api.github.com"

    app_id: str = ""
    private_key_path: str = ""
    private_key: str = ""
    private_key_b64: str = ""
    explicit_token: str = ""

    http_timeout_s: int = 30
    check_name: str = "FlowLint"
    app_slug: str = "flowlint"

    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "review"
    job_attempts: int = 3
    job_backoff_s: float = 2.0

    worker_concurrency: int = 4
    shutdown_timeout_s: float = 45.0
    fetch_concurrency: int = 4
    recover_stalled: bool = True
    stalled_after_s: float = 900.0

    queue_degraded_threshold: int = 50
    max_body_bytes: int = 2 * 1024 * 1024
    rate_limit_per_minute: int = 100
    trust_proxy: bool = False

    docs_base_url: str = "https://github.com/Replikanti/flowlint-examples/tree/main"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            webhook_secret=str_env("GITHUB_WEBHOOK_SECRET") or str_env("WEBHOOK_SECRET"),
            github_api=str_env("GITHUB_API", cls.github_api).rstrip("/"),
            app_id=str_env("GITHUB_APP_ID"),
            private_key_path=str_env("GITHUB_APP_PRIVATE_KEY_PATH"),
            private_key=str_env("GITHUB_APP_PRIVATE_KEY"),
            private_key_b64=str_env("GITHUB_APP_PRIVATE_KEY_B64"),
            explicit_token=str_env("GITHUB_TOKEN"),
            http_timeout_s=int_env("HTTP_TIMEOUT_S", cls.http_timeout_s),
            check_name=str_env("CHECK_NAME", cls.check_name),
            app_slug=str_env("GITHUB_APP_SLUG", cls.app_slug),
            redis_url=str_env("REDIS_URL", cls.redis_url),
            queue_name=str_env("QUEUE_NAME", cls.queue_name),
            job_attempts=int_env("JOB_ATTEMPTS", cls.job_attempts),
            job_backoff_s=float_env("JOB_BACKOFF_S", cls.job_backoff_s),
            worker_concurrency=int_env("WORKER_CONCURRENCY", cls.worker_concurrency),
            shutdown_timeout_s=float_env("SHUTDOWN_TIMEOUT_S", cls.shutdown_timeout_s),
            fetch_concurrency=int_env("FETCH_CONCURRENCY", cls.fetch_concurrency),
            recover_stalled=bool_env("RECOVER_STALLED_JOBS", cls.recover_stalled),
            stalled_after_s=float_env("STALLED_AFTER_S", cls.stalled_after_s),
            queue_degraded_threshold=int_env("QUEUE_DEGRADED_THRESHOLD", cls.queue_degraded_threshold),
            max_body_bytes=int_env("MAX_WEBHOOK_BODY_BYTES", cls.max_body_bytes),
            rate_limit_per_minute=int_env("WEBHOOK_RATE_LIMIT", cls.rate_limit_per_minute),
            trust_proxy=bool_env("TRUST_PROXY", cls.trust_proxy),
            docs_base_url=str_env("DOCS_BASE_URL", cls.docs_base_url).rstrip("/"),
            log_level=str_env("LOGLEVEL", cls.log_level).upper(),
        )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
