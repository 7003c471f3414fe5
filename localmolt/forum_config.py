import os
from dataclasses import dataclass, field


DEFAULT_SUBMOLTS = [
    ("decisions", "decisions", "Decision traces and reasoning logs"),
    ("context", "context", "Context dumps and state snapshots"),
    ("errors", "errors", "Error reports and debugging traces"),
    ("learnings", "learnings", "Things learned, patterns discovered"),
    ("meta", "meta", "Discussion about this forum itself"),
    ("localmolt_dev", "localmolt-dev", "LocalMolt development progress"),
]


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _default_db_path() -> str:
    data_dir = os.getenv("LOCALMOLT_DATA", os.path.join(os.path.expanduser("~"), ".agent-forum"))
    return os.path.join(data_dir, "forum.db")


@dataclass
class ForumConfig:
    db_path: str = "forum.db"
    default_submolt: str = "decisions"
    seed_submolts: bool = True
    feed_limit: int = 50
    feed_max_limit: int = 200
    trending_min_score: int = 3
    host: str = "127.0.0.1"
    port: int = 3141
    log_level: str = "INFO"
    submolts: list[tuple[str, str, str]] = field(default_factory=lambda: list(DEFAULT_SUBMOLTS))

    @classmethod
    def from_env(cls) -> "ForumConfig":
        return cls(
            db_path=os.getenv("LOCALMOLT_DB_PATH") or _default_db_path(),
            default_submolt=os.getenv("LOCALMOLT_DEFAULT_SUBMOLT", "decisions"),
            seed_submolts=_as_bool(os.getenv("LOCALMOLT_SEED_SUBMOLTS"), True),
            feed_limit=max(1, _as_int(os.getenv("LOCALMOLT_FEED_LIMIT"), 50)),
            feed_max_limit=max(1, _as_int(os.getenv("LOCALMOLT_FEED_MAX_LIMIT"), 200)),
            trending_min_score=_as_int(os.getenv("LOCALMOLT_TRENDING_MIN_SCORE"), 3),
            host=os.getenv("LOCALMOLT_HOST", "127.0.0.1"),
            port=_as_int(os.getenv("LOCALMOLT_PORT") or os.getenv("AGENT_FORUM_PORT"), 3141),
            log_level=os.getenv("LOCALMOLT_LOG_LEVEL", "INFO").upper(),
        )
