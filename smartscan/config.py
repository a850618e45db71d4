"""Configuration management for SmartScan.

Supports:
- Local config file (~/.smartscan/config.json)
- Environment variables (SMARTSCAN_*)
- CLI overrides

API tokens can be provided via the config file (``server.api_tokens``) or
``SMARTSCAN_API_TOKENS`` as ``token=email`` pairs separated by commas.
They are never written back by ``save_config``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".smartscan"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"


@dataclass
class OCRConfig:
    """OCR configuration."""

    backend: str = "tesseract"
    tesseract_cmd: str | None = None

    # Recognized together, e.g. "eng+rus" for Tesseract
    languages: list[str] = field(default_factory=lambda: ["eng", "rus"])

    # Concurrent engine sessions per process
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 1)

    @property
    def language_spec(self) -> str:
        return "+".join(self.languages)


@dataclass
class StorageConfig:
    """Blob storage and upload limits."""

    upload_dir: Path | None = None  # defaults to <data_dir>/uploads
    max_file_size_mb: int = 100
    max_files: int = 20

    @property
    def max_file_size(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


@dataclass
class SearchConfig:
    """Search and autocomplete tuning."""

    default_limit: int = 20
    max_limit: int = 100
    highlight_window: int = 50
    suggestion_limit: int = 5


@dataclass
class ServerConfig:
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000

    # Bearer token -> user email
    api_tokens: dict[str, str] = field(default_factory=dict)


@dataclass
class SmartScanConfig:
    """Main configuration container."""

    ocr: OCRConfig = field(default_factory=OCRConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    database_url: str | None = None
    log_level: str = "INFO"

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.data_dir / 'smartscan.db'}"

    @property
    def resolved_upload_dir(self) -> Path:
        return Path(self.storage.upload_dir) if self.storage.upload_dir else self.data_dir / "uploads"


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "SMARTSCAN_",
) -> SmartScanConfig:
    """Load configuration from file and environment.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file
    3. Defaults
    """
    config = SmartScanConfig()

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            config = _merge_config(config, data)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load config from %s: %s", path, e)

    config = _apply_env_overrides(config, env_prefix)

    config.data_dir.mkdir(parents=True, exist_ok=True)

    return config


def _merge_config(config: SmartScanConfig, data: dict[str, Any]) -> SmartScanConfig:
    """Merge loaded data into config object."""

    if "data_dir" in data:
        config.data_dir = Path(data["data_dir"]).expanduser()
    config.database_url = data.get("database_url", config.database_url)
    config.log_level = data.get("log_level", config.log_level)

    if "ocr" in data:
        ocr = data["ocr"]
        config.ocr.backend = ocr.get("backend", config.ocr.backend)
        config.ocr.tesseract_cmd = ocr.get("tesseract_cmd", config.ocr.tesseract_cmd)
        languages = ocr.get("languages")
        if isinstance(languages, str):
            languages = [lang for lang in languages.split("+") if lang]
        if languages:
            config.ocr.languages = list(languages)
        config.ocr.max_workers = int(ocr.get("max_workers", config.ocr.max_workers))

    if "storage" in data:
        st = data["storage"]
        if st.get("upload_dir"):
            config.storage.upload_dir = Path(st["upload_dir"]).expanduser()
        config.storage.max_file_size_mb = int(st.get("max_file_size_mb", config.storage.max_file_size_mb))
        config.storage.max_files = int(st.get("max_files", config.storage.max_files))

    if "search" in data:
        se = data["search"]
        config.search.default_limit = int(se.get("default_limit", config.search.default_limit))
        config.search.max_limit = int(se.get("max_limit", config.search.max_limit))
        config.search.highlight_window = int(se.get("highlight_window", config.search.highlight_window))
        config.search.suggestion_limit = int(se.get("suggestion_limit", config.search.suggestion_limit))

    if "server" in data:
        srv = data["server"]
        config.server.host = srv.get("host", config.server.host)
        config.server.port = int(srv.get("port", config.server.port))
        config.server.api_tokens = dict(srv.get("api_tokens") or srv.get("_api_tokens") or {})

    return config


def _apply_env_overrides(config: SmartScanConfig, prefix: str) -> SmartScanConfig:
    """Apply environment variable overrides."""

    if v := os.environ.get(f"{prefix}DATA_DIR"):
        config.data_dir = Path(v).expanduser()
    if v := os.environ.get(f"{prefix}DATABASE_URL"):
        config.database_url = v
    if v := os.environ.get(f"{prefix}LOG_LEVEL"):
        config.log_level = v

    # OCR
    if v := os.environ.get(f"{prefix}OCR_BACKEND"):
        config.ocr.backend = v
    if v := os.environ.get(f"{prefix}TESSERACT_CMD"):
        config.ocr.tesseract_cmd = v
    if v := os.environ.get(f"{prefix}OCR_LANGUAGES"):
        config.ocr.languages = [lang for lang in v.split("+") if lang]
    if v := os.environ.get(f"{prefix}OCR_MAX_WORKERS"):
        config.ocr.max_workers = int(v)

    # Storage
    if v := os.environ.get(f"{prefix}UPLOAD_DIR"):
        config.storage.upload_dir = Path(v).expanduser()

    # Server
    if v := os.environ.get(f"{prefix}HOST"):
        config.server.host = v
    if v := os.environ.get(f"{prefix}PORT"):
        config.server.port = int(v)
    if v := os.environ.get(f"{prefix}API_TOKENS"):
        for pair in v.split(","):
            token, _, email = pair.partition("=")
            if token and email:
                config.server.api_tokens[token.strip()] = email.strip()

    return config


def save_config(config: SmartScanConfig, config_path: Path | str | None = None) -> None:
    """Save configuration to file (excludes API tokens)."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "data_dir": str(config.data_dir),
        "database_url": config.database_url,
        "log_level": config.log_level,
        "ocr": {
            "backend": config.ocr.backend,
            "tesseract_cmd": config.ocr.tesseract_cmd,
            "languages": config.ocr.languages,
            "max_workers": config.ocr.max_workers,
        },
        "storage": {
            "upload_dir": str(config.storage.upload_dir) if config.storage.upload_dir else None,
            "max_file_size_mb": config.storage.max_file_size_mb,
            "max_files": config.storage.max_files,
        },
        "search": {
            "default_limit": config.search.default_limit,
            "max_limit": config.search.max_limit,
            "highlight_window": config.search.highlight_window,
            "suggestion_limit": config.search.suggestion_limit,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
    }

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
