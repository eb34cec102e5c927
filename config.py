import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret: str,
        admin_emails: frozenset[str],
        environment: str,
        attachments_dir: Path,
        log_level: str,
        base_url: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret = secret
        self.admin_emails = admin_emails
        self.environment = environment
        self.attachments_dir = attachments_dir
        self.log_level = log_level
        self.base_url = base_url

    def is_admin_email(self, email: str | None) -> bool:
        if not email:
            return False
        return email.strip().lower() in self.admin_emails


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ICOMAG_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_emails(raw: str) -> frozenset[str]:
    return frozenset(e.strip().lower() for e in raw.split(",") if e.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "icomag.db"
    database_url = os.getenv("ICOMAG_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("ICOMAG_TIMEZONE", "America/Santo_Domingo")
    secret = os.getenv(
        "ICOMAG_SECRET",
        "3f0c1e2b7a9d4c58b6e1f2a3d4c5b6a7e8f9a0b1c2d3e4f5a6b7c8d9e0f1a2b3",
    )
    admin_emails = _parse_emails(os.getenv("ICOMAG_ADMIN_EMAILS", ""))
    environment = os.getenv("ICOMAG_ENV", "development")
    attachments_dir = Path(
        os.getenv("ICOMAG_ATTACHMENTS_DIR", str(data_dir / "attachments"))
    ).resolve()
    log_level = os.getenv("ICOMAG_LOG_LEVEL", "INFO").upper()
    base_url = os.getenv("ICOMAG_BASE_URL", "http://localhost:8000")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret=secret,
        admin_emails=admin_emails,
        environment=environment,
        attachments_dir=attachments_dir,
        log_level=log_level,
        base_url=base_url,
    )
