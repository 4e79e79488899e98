"""Application configuration and logging utilities."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


IN_MEMORY_DATABASE = ":memory:"
ACCOUNT_TYPES = ("epc", "owner")


def _parse_csv_env(name: str) -> tuple[str, ...]:
    """Parse a comma-separated environment variable into a tuple of values."""

    raw = os.getenv(name, "")
    if not raw:
        return ()
    parts: list[str] = []
    for chunk in raw.split(","):
        value = chunk.strip()
        if value:
            parts.append(value)
    return tuple(parts)


_DEFAULT_CSP_SCRIPT_SRC = ("https://unpkg.com", "https://cdn.plot.ly")
_DEFAULT_CSP_STYLE_SRC = ("https://fonts.googleapis.com", "https://cdn.jsdelivr.net")
_DEFAULT_CSP_FONT_SRC = ("https://fonts.gstatic.com",)


@dataclass(frozen=True)
class AppConfig:
    """Immutable configuration sourced from environment variables or defaults."""

    # Security
    secret_key: str = os.getenv("SECRET_KEY", "change-me")

    # Runtime environment
    app_env: str = os.getenv("APP_ENV", "development")
    enable_https: bool = os.getenv("ENABLE_HTTPS", "0") == "1"
    behind_proxy: bool = os.getenv("BEHIND_PROXY", "0") == "1"

    # Storage
    database_path: str = os.getenv("DATABASE_PATH", IN_MEMORY_DATABASE)
    allowed_data_root: Path = Path(os.getenv("ALLOWED_DATA_ROOT", ".")).resolve()

    # Pile rules
    default_embedment_tolerance: float = float(os.getenv("DEFAULT_EMBEDMENT_TOLERANCE", "1.0"))
    drive_time_threshold_minutes: float = float(os.getenv("DRIVE_TIME_THRESHOLD_MINUTES", "10"))
    gain_threshold: float = float(os.getenv("GAIN_THRESHOLD", "6"))

    # Fetching and batching
    fetch_page_size: int = int(os.getenv("FETCH_PAGE_SIZE", "1000"))
    fetch_workers: int = int(os.getenv("FETCH_WORKERS", "4"))
    import_batch_size: int = int(os.getenv("IMPORT_BATCH_SIZE", "50"))
    lookup_batch_size: int = int(os.getenv("LOOKUP_BATCH_SIZE", "100"))
    preliminary_batch_size: int = int(os.getenv("PRELIMINARY_BATCH_SIZE", "100"))
    table_page_size: int = int(os.getenv("TABLE_PAGE_SIZE", "50"))

    # Field entry and identity
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8050")
    account_type: str = os.getenv("ACCOUNT_TYPE", "epc").strip().lower()
    current_user_id: str = os.getenv("CURRENT_USER_ID", "local-user")

    # CSP customisation
    csp_script_src: tuple[str, ...] = _DEFAULT_CSP_SCRIPT_SRC + _parse_csv_env("CSP_SCRIPT_SRC")
    csp_style_src: tuple[str, ...] = _DEFAULT_CSP_STYLE_SRC + _parse_csv_env("CSP_STYLE_SRC")
    csp_font_src: tuple[str, ...] = _DEFAULT_CSP_FONT_SRC + _parse_csv_env("CSP_FONT_SRC")
    csp_connect_src: tuple[str, ...] = _parse_csv_env("CSP_CONNECT_SRC")
    csp_img_src: tuple[str, ...] = _parse_csv_env("CSP_IMG_SRC")

    @property
    def can_edit(self) -> bool:
        """Owner accounts are read-only; EPC accounts may change data."""

        return self.account_type != "owner"

    def validate(self) -> None:
        """Ensure the database file stays within the permitted root and values are sane."""

        if self.account_type not in ACCOUNT_TYPES:
            raise ValueError(
                f"ACCOUNT_TYPE '{self.account_type}' must be one of {', '.join(ACCOUNT_TYPES)}."
            )
        if self.default_embedment_tolerance < 0:
            raise ValueError("DEFAULT_EMBEDMENT_TOLERANCE must not be negative.")
        for name in ("fetch_page_size", "fetch_workers", "import_batch_size", "lookup_batch_size",
                     "preliminary_batch_size", "table_page_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name.upper()} must be at least 1.")

        if self.database_path == IN_MEMORY_DATABASE:
            return
        resolved_root = Path(self.allowed_data_root).expanduser().resolve()
        resolved_db = Path(self.database_path).expanduser().resolve()
        if resolved_root not in resolved_db.parents:
            raise ValueError(
                f"DATABASE_PATH '{resolved_db}' must reside inside ALLOWED_DATA_ROOT '{resolved_root}'."
            )


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging once for the application."""

    root_logger = logging.getLogger()
    if root_logger.handlers:
        root_logger.debug("Logging already configured; skipping reconfiguration.")
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
