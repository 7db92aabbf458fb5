"""Configuration and environment settings for the watcher."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "chanwatch"
    user: str = "chanwatch"
    password: str = "chanwatch"

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}"

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            dbname=os.getenv("DB_NAME", "chanwatch"),
            user=os.getenv("DB_USER", "chanwatch"),
            password=os.getenv("DB_PASSWORD", "chanwatch"),
        )


@dataclass(frozen=True)
class S3Config:
    endpoint: str = "http://localhost:9000"
    access_key: str = "minioadmin"
    secret_key: str = "minioadmin"
    bucket: str = "chanwatch"
    use_ssl: bool = False

    @classmethod
    def from_env(cls) -> S3Config:
        return cls(
            endpoint=os.getenv("S3_ENDPOINT", "http://localhost:9000"),
            access_key=os.getenv("S3_ACCESS_KEY", "minioadmin"),
            secret_key=os.getenv("S3_SECRET_KEY", "minioadmin"),
            bucket=os.getenv("S3_BUCKET", "chanwatch"),
            use_ssl=os.getenv("S3_USE_SSL", "false").lower() == "true",
        )


@dataclass(frozen=True)
class ImageBoardConfig:
    """Endpoint bases for the supported image boards and HTTP client settings."""
    fourchan_api_base: str = "https://a.4cdn.org"
    fourchan_image_base: str = "https://i.4cdn.org"
    dvach_base: str = "https://2ch.hk"
    max_retries: int = 3
    timeout: float = 30.0
    user_agent: str = "chanwatch/1.0"


@dataclass(frozen=True)
class ObserverConfig:
    """What one observer watches and how hard it polls.

    ``catalog_delay`` separates poll cycles, ``thread_delay`` separates
    individual thread fetches inside a cycle.
    """
    image_board: str
    board: str
    whitelist: frozenset[int] = frozenset()
    whitelist_enabled: bool = False
    catalog_delay: float = 5.0
    thread_delay: float = 1.0

    def allows(self, number: int) -> bool:
        return not self.whitelist_enabled or number in self.whitelist


@dataclass
class WatchConfig:
    db: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    s3: S3Config = field(default_factory=S3Config.from_env)
    imageboards: ImageBoardConfig = field(default_factory=ImageBoardConfig)
    observers: list[ObserverConfig] = field(default_factory=list)
    stash_files: bool = True
    generate_thumbnails: bool = False
    thumbnail_max_size: int = 250
    stash_delay: float = 2.0
    dry_run: bool = False
