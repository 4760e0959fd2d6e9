import os


class Config:
    def __init__(self) -> None:
        self.APP_ENV = os.getenv("APP_ENV", "development")
        self.APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
        self.HOST = os.getenv("HOST", "0.0.0.0")
        self.PORT = int(os.getenv("PORT", "5002"))

        database_url = (os.getenv("DATABASE_URL", "sqlite:///./devmeet.db") or "").strip()
        # SQLAlchemy 2 no longer accepts the postgres:// scheme.
        if database_url.startswith("postgres://"):
            database_url = "postgresql://" + database_url[len("postgres://"):]
        self.DATABASE_URL = database_url

        self.SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", str(30 * 24 * 60)))
        self.INVITATION_TTL_DAYS = int(os.getenv("INVITATION_TTL_DAYS", "7"))
        self.APP_BASE_URL = (os.getenv("APP_BASE_URL", "http://localhost:3000") or "").rstrip("/")

        self.ALLOWED_ORIGINS = [
            s.strip() for s in (os.getenv("ALLOWED_ORIGINS", "*") or "*").split(",") if s.strip()
        ]

        self.UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

        self.RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "100 per minute")
        self.RATE_LIMIT_GLOBAL = os.getenv("RATE_LIMIT_GLOBAL", "1000 per minute")
        self.RATE_LIMIT_LOGIN = os.getenv("RATE_LIMIT_LOGIN", "10 per minute")

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "") or os.getenv("GOOGLE_GEMINI_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

        self.GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")

        self.STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
        self.STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.STRIPE_BASIC_PRICE_ID = os.getenv("STRIPE_BASIC_PRICE_ID", "")
        self.STRIPE_PRO_PRICE_ID = os.getenv("STRIPE_PRO_PRICE_ID", "")
        self.STRIPE_ENTERPRISE_PRICE_ID = os.getenv("STRIPE_ENTERPRISE_PRICE_ID", "")

    @property
    def is_production(self) -> bool:
        return str(self.APP_ENV or "").lower() == "production"
