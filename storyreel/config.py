from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STORYREEL_",
        extra="ignore",
    )

    # Google Cloud Storage
    gcs_bucket_name: str = "storyreel-videos"
    gcs_project_id: str = ""
    # Destination for rendered movies and caption files (gs://bucket/prefix)
    export_storage_prefix: str = "exports"
    signed_url_expiration_minutes: int = 60 * 24

    # Local storage for development (when GCS is not configured)
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/storyreel-storage"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Render settings
    render_output_width: int = 1920
    render_output_height: int = 1080
    render_fps: int = 30
    render_video_codec: str = "libx264"
    render_crf: int = 23
    render_preset: str = "veryfast"
    render_audio_bitrate: str = "192k"
    render_audio_sample_rate: int = 48000
    # Maximum threads for FFmpeg (limits per-thread buffer memory)
    render_ffmpeg_threads: int = 2
    render_ffmpeg_max_muxing_queue: int = 1024
    # Music fade-out at the end of the movie, 0 disables
    export_audio_fade_out_s: float = 3.0

    # Asset fetching
    asset_fetch_concurrency: int = 4
    asset_fetch_timeout_s: float = 300.0

    # Retry policy shared by every network call to storage / AI backends
    retry_max_attempts: int = 5
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    retry_jitter_s: float = 2.0

    # Progress reporting
    progress_min_interval_s: float = 0.25

    # Working directories
    temp_dir_prefix: str = "storyreel_"


@lru_cache
def get_settings() -> Settings:
    return Settings()
