# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Application Configuration
All settings are loaded from environment variables with defaults tuned for
the card builder (63:88 cards, phone-camera uploads). Override via
backend/.env or environment.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ─── Storage ─────────────────────────────────────────────────────────────
    storage_root: Path = Path("./storage")
    templates_dir: Path = Path("./storage/templates")

    # ─── Upload Limits ───────────────────────────────────────────────────────
    upload_max_mb: int = 25
    # Pixel-area ceiling checked from the image header before full decode
    upload_max_megapixels: float = 40.0
    max_uploads_per_document: int = 30
    thumbnail_long_edge: int = 256

    # ─── Document ────────────────────────────────────────────────────────────
    history_limit: int = 50

    # ─── Card Canvas ─────────────────────────────────────────────────────────
    # 63:88 trading-card ratio, used for bases derived from uploaded photos
    card_width: int = 630
    card_height: int = 880

    # ─── Export ──────────────────────────────────────────────────────────────
    export_format: Literal["png", "jpeg", "webp"] = "png"
    export_jpeg_quality: int = 92
    preview_long_edge: int = 512

    # ─── Remote Images ───────────────────────────────────────────────────────
    remote_fetch_timeout_seconds: float = 15.0

    # ─── Cloudinary ──────────────────────────────────────────────────────────
    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None
    cloudinary_folder: str = "gunpla-cards"

    # ─── Logging ─────────────────────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ─── Server ──────────────────────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000

    # ─── Derived helpers ─────────────────────────────────────────────────────
    @property
    def upload_max_bytes(self) -> int:
        return self.upload_max_mb * 1024 * 1024

    @property
    def upload_max_pixels(self) -> int:
        return int(self.upload_max_megapixels * 1_000_000)

    @property
    def card_size(self) -> tuple[int, int]:
        return self.card_width, self.card_height


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached singleton Settings instance."""
    return Settings()
