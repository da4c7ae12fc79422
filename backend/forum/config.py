"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    JWT_REMEMBER_ME_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    MAX_UPLOAD_BYTES: int
    MEDIA_ROOT: Path
    MEDIA_BASE_URL: str
    ACTIVATION_CODE_TTL_SECONDS: int
    PASSWORD_RESET_TTL_SECONDS: int
    SMTP_HOST: str
    SMTP_PORT: int
    SMTP_USER: str
    SMTP_PASSWORD: str
    SMTP_FROM: str
    AUTH_RATE_LIMIT_PER_MIN: int
    AUTH_RATE_LIMIT_WINDOW_SECONDS: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.JWT_REMEMBER_ME_HOURS = int(os.getenv("JWT_REMEMBER_ME_HOURS", str(24 * 30)))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("FORUM_DATABASE_URL", f"sqlite:///{BASE / 'forum.db'}")
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))  # 5 MB default
        self.MEDIA_ROOT = Path(os.getenv("MEDIA_ROOT", str(BASE / "data" / "media"))).expanduser().resolve()
        self.MEDIA_BASE_URL = os.getenv("MEDIA_BASE_URL", "/media").rstrip("/")
        # activation codes are short lived; reset codes get a little longer
        self.ACTIVATION_CODE_TTL_SECONDS = int(os.getenv("ACTIVATION_CODE_TTL_SECONDS", "300"))
        self.PASSWORD_RESET_TTL_SECONDS = int(os.getenv("PASSWORD_RESET_TTL_SECONDS", "900"))
        self.SMTP_HOST = os.getenv("SMTP_HOST", "")
        self.SMTP_PORT = int(os.getenv("SMTP_PORT", "465"))
        self.SMTP_USER = os.getenv("SMTP_USER", "")
        self.SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
        self.SMTP_FROM = os.getenv("SMTP_FROM", self.SMTP_USER)
        self.AUTH_RATE_LIMIT_PER_MIN = int(os.getenv("AUTH_RATE_LIMIT_PER_MIN", "30"))
        self.AUTH_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("AUTH_RATE_LIMIT_WINDOW_SECONDS", "60"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ACTIVATION_CODE_TTL_SECONDS <= 0 or self.PASSWORD_RESET_TTL_SECONDS <= 0:
            raise RuntimeError("code TTL settings must be positive")

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST and self.SMTP_USER and self.SMTP_PASSWORD and self.SMTP_FROM)


settings = Settings()
