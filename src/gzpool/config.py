from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_COMMAND_TEMPLATE = "gzip -c {source}"


@dataclass(slots=True)
class PathsConfig:
    work_dir: Path
    output_dir: Path
    db: Path
    log: Path


@dataclass(slots=True, frozen=True)
class PoolConfig:
    size: int = 4
    readiness_timeout_seconds: float = 30.0
    max_consecutive_errors: int = 0


@dataclass(slots=True)
class TransformConfig:
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    output_suffix: str = ".gz"
    stdout_to_output: bool = True


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    pool: PoolConfig = field(default_factory=PoolConfig)
    transform: TransformConfig = field(default_factory=TransformConfig)


def _require_mapping(raw: object, section: str) -> dict:
    if not isinstance(raw, dict):
        raise ValueError(f"`{section}` must be a mapping")
    return raw


def _as_bool(value: object, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"`{key}` must be true or false")


def default_config(base_dir: Path | None = None) -> AppConfig:
    return build_config({}, base_dir or Path.cwd())


def load_config(path: str | Path | None) -> AppConfig:
    if path is None:
        return default_config()
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")
    return build_config(raw, config_path.parent)


def build_config(raw: dict, base_dir: Path) -> AppConfig:
    paths_raw = _require_mapping(raw.get("paths", {}), "paths")
    pool_raw = _require_mapping(raw.get("pool", {}), "pool")
    transform_raw = _require_mapping(raw.get("transform", {}), "transform")

    def to_path(key: str, default: str) -> Path:
        output = Path(str(paths_raw.get(key, default))).expanduser()
        if not output.is_absolute():
            output = base_dir / output
        return output

    paths = PathsConfig(
        work_dir=to_path("work_dir", "./source_files"),
        output_dir=to_path("output_dir", "./compressed_files"),
        db=to_path("db", "./gzpool.db"),
        log=to_path("log", "./gzpool.log"),
    )

    pool = PoolConfig(
        size=int(pool_raw.get("size", 4)),
        readiness_timeout_seconds=float(pool_raw.get("readiness_timeout_seconds", 30)),
        max_consecutive_errors=int(pool_raw.get("max_consecutive_errors", 0)),
    )
    if pool.size < 1:
        raise ValueError("`pool.size` must be >= 1")
    if pool.readiness_timeout_seconds <= 0:
        raise ValueError("`pool.readiness_timeout_seconds` must be > 0")
    if pool.max_consecutive_errors < 0:
        raise ValueError("`pool.max_consecutive_errors` must be >= 0")

    transform = TransformConfig(
        command_template=str(transform_raw.get("command_template", DEFAULT_COMMAND_TEMPLATE)),
        output_suffix=str(transform_raw.get("output_suffix", ".gz")),
        stdout_to_output=_as_bool(transform_raw.get("stdout_to_output", True), "transform.stdout_to_output"),
    )
    if not transform.command_template.strip():
        raise ValueError("`transform.command_template` must not be empty")

    return AppConfig(paths=paths, pool=pool, transform=transform)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.work_dir.mkdir(parents=True, exist_ok=True)
    config.paths.output_dir.mkdir(parents=True, exist_ok=True)
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
