from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "chunkserve"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    storage_backend: str = "local"
    storage_root: str = "./data"
    completion_policy: str = "received_set"
    max_chunk_size_bytes: int = 64 * 1024 * 1024
    download_block_size_bytes: int = 64 * 1024
    worker_count: int = 16
    task_queue_maxsize: int = 512
    max_global_inflight_chunks: int = 128
    tracing_enabled: bool = False
    tracing_service_name: str = "chunkserve"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_chunk_ttl_seconds: int = 86400


settings = Settings()
