# services/api/settings.py
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field
from typing import List, Optional
from pathlib import Path


class Settings(BaseSettings):
    # Storage settings
    # Default to SQLite; tests and demos can switch via .env (STORAGE_BACKEND=json)
    storage_backend: str = "sqlite"
    db_url: str = "sqlite:///data/dispatch.db"
    data_dir: str = "data"

    # Merged artifacts are written here and served under {public_base_url}/artifacts/
    artifact_dir: str = "data/artifacts"
    public_base_url: str = "http://localhost:8000"

    # CORS settings
    allowed_origins: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    # Email settings
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_from_name: str = "Recruitment Dispatch"

    # Comma-separated list of emails CC'd on every client forward
    # Example in .env:
    # SMTP_ALWAYS_CC=ops@example.com,lead@example.com
    smtp_always_cc: Optional[str] = Field(
        default=None,
        description="Comma-separated emails CC'ed on every forward to a client",
    )
    smtp_always_bcc: Optional[str] = Field(
        default=None,
        description="Comma-separated emails BCC'ed on every forward to a client",
    )

    # Google Drive settings (drive-link delivery)
    gdrive_root_folder_name: str = "Candidate_Dispatch"
    # Optional: if you create the root folder manually & share it, put its ID here
    gdrive_root_folder_id: str = ""

    # ---- Dispatch limits ----

    # Combined delivery puts every attachment in one mail; Gmail/Outlook reject > 20 MiB.
    combined_size_limit_mb: int = 20

    # Candidates shown per page inside a bulk batch (4 rows x 4 columns).
    bulk_page_size: int = 16

    # Timeout for fetching a source document while merging.
    merge_fetch_timeout: float = 30.0

    # Each grouped backend call fails its partition if it takes longer than this.
    dispatch_timeout_seconds: float = 60.0

    # Max number of partition calls in flight at once per application instance.
    max_parallel_dispatches: int = 8

    # SMTP send attempts (exponential backoff between them).
    email_retry_attempts: int = 3

    # Open batches are dropped after this many idle seconds.
    batch_ttl_seconds: int = 3600
    max_open_batches: int = 512

    history_default_limit: int = 10

    model_config = ConfigDict(
        # Always load .env from the same folder as this settings.py
        env_file=str(Path(__file__).resolve().parent / ".env"),
        extra="ignore",
    )

    @property
    def combined_size_limit_bytes(self) -> int:
        return self.combined_size_limit_mb * 1024 * 1024

    def get_origins_list(self) -> List[str]:
        """Parse comma-separated origins into a list."""
        if not self.allowed_origins:
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    def always_cc_list(self) -> List[str]:
        return _split_emails(self.smtp_always_cc)

    def always_bcc_list(self) -> List[str]:
        return _split_emails(self.smtp_always_bcc)


def _split_emails(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [addr.strip() for addr in raw.split(",") if addr and addr.strip()]


_settings_instance = None

def get_settings() -> Settings:
    """Singleton pattern for settings."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached instance so the next get_settings() re-reads the environment."""
    global _settings_instance
    _settings_instance = None
