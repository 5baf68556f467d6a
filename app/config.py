"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class Settings(BaseSettings):
    # Service
    service_port: int = 8000
    log_level: str = "INFO"

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Job record store: "memory" or "supabase"
    job_store_backend: str = "memory"
    jobs_table: str = "jobs"
    settings_table: str = "settings"
    credit_table: str = "credit_activity"

    # Local result storage
    results_dir: str = "./public/results"
    results_url_prefix: str = "/results"
    retrieval_url_prefix: str = "/api/results"
    max_upload_bytes: int = 500 * 1024 * 1024

    # RunPod serverless backend
    runpod_base_url: str = "https://api.runpod.ai/v2"
    runpod_api_key: Optional[str] = None
    runpod_endpoints: Dict[str, str] = {}  # model_id -> endpoint id (JSON in env)
    runpod_generate_timeout: Optional[int] = None  # seconds, overrides model default
    runpod_poll_interval: float = 5.0
    runpod_request_timeout: float = 60.0
    runpod_max_request_attempts: int = 3

    # Result download
    download_timeout: float = 300.0

    # Object / volume storage (S3-compatible)
    s3_endpoint_url: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_bucket_name: Optional[str] = None
    s3_region: str = "us-east-1"
    s3_volume_mount: str = "/runpod-volume"
    s3_input_prefix: str = "input"

    # Poller supervision
    poller_lease_margin_seconds: int = 300
    poller_shutdown_grace_seconds: float = 10.0
    resume_inflight_on_startup: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
