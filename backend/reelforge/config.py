from functools import lru_cache

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REELFORGE_",
        extra="ignore",
    )

    # Application
    app_name: str = "Reelforge API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via REELFORGE_GIT_HASH at build time
    log_level: str = "INFO"

    # CORS - comma-separated origins
    cors_origins_raw: str = "http://localhost:3000,http://localhost:5173"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from a pipe or comma-separated string."""
        sep = "|" if "|" in self.cors_origins_raw else ","
        return [o.strip() for o in self.cors_origins_raw.split(sep) if o.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Output stream
    render_output_width: int = 1080
    render_output_height: int = 1920
    render_fps: int = 30
    render_video_codec: str = "libx264"
    render_crf: int = 20
    render_preset: str = "veryfast"
    render_pixel_format: str = "yuv420p"

    # Scheduler tuning (seconds)
    drift_tolerance_s: float = 0.3
    preview_drift_tolerance_s: float = 0.4
    pre_seek_buffer_s: float = 0.1
    seek_timeout_s: float = 0.5
    source_ready_timeout_s: float = 10.0
    render_timeout_s: float = 300.0
    # False = offline frame-stepped pacing (faster than real time)
    render_realtime: bool = False
    # Used when ffprobe cannot report a source duration
    default_source_duration_s: float = 30.0

    # Render cache (empty dir = in-memory only)
    render_cache_dir: str = ""
    render_cache_max_entries: int = 10
    render_cache_version: str = "v3"

    # Source fetch
    source_download_dir: str = "/tmp/reelforge-sources"
    source_download_timeout_s: float = 60.0

    # Fonts
    font_dirs_raw: str = ""
    default_font_family: str = "Inter"

    @computed_field
    @property
    def font_dirs(self) -> list[str]:
        """Extra font directories searched before the system defaults."""
        return [d.strip() for d in self.font_dirs_raw.split(",") if d.strip()]

    # Preview
    preview_scale: float = 0.5


@lru_cache
def get_settings() -> Settings:
    return Settings()
