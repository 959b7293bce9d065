from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "chunkstream"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./chunkstream.db"
    auto_create_schema: bool = True
    storage_root: str = "./data"
    staging_dir: str = "staging"
    blob_dir: str = "blobs"
    legacy_media_dir: str = "videos"
    blob_backend: str = "local"
    s3_bucket: str = ""
    s3_prefix: str = "blobs/"
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    s3_part_size_bytes: int = 8 * 1024 * 1024
    transfer_piece_bytes: int = 256 * 1024
    transfer_channel_depth: int = 4
    stream_piece_bytes: int = 64 * 1024
    max_name_length: int = 200
    list_default_limit: int = 50
    list_max_limit: int = 200
    bulk_delete_max: int = 200
    max_chunk_size_bytes: int = 64 * 1024 * 1024
    max_inflight_chunks_per_upload: int = 8
    worker_count: int = 16
    task_queue_maxsize: int = 512
    max_global_inflight_writes: int = 128
    tracing_enabled: bool = False
    tracing_service_name: str = "chunkstream"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_upload_ttl_seconds: int = 86400


settings = Settings()
