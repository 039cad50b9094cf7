import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "orderflow.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-orderflow")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")

    ERP_MODE = os.environ.get("ERP_MODE", "mock")
    ERP_API_URL = os.environ.get("ERP_API_URL", "https://erp.example.com/api/v3")
    ERP_TOKEN_URL = os.environ.get("ERP_TOKEN_URL", "https://erp.example.com/api/v3/oauth/token")
    ERP_CLIENT_ID = os.environ.get("ERP_CLIENT_ID")
    ERP_CLIENT_SECRET = os.environ.get("ERP_CLIENT_SECRET")
    ERP_STATUS_PATH = os.environ.get("ERP_STATUS_PATH", "/orders/{ref}/status/{code}")
    ERP_TIMEOUT_SECONDS = _int_env("ERP_TIMEOUT_SECONDS", 20)
    ERP_VERIFY_SSL = _bool_env("ERP_VERIFY_SSL", True)
    ERP_SYNC_MAX_RETRIES = _int_env("ERP_SYNC_MAX_RETRIES", 3)
    ERP_RETRY_BASE_DELAY_MS = _int_env("ERP_RETRY_BASE_DELAY_MS", 2000)
    ERP_RETRY_MAX_DELAY_MS = _int_env("ERP_RETRY_MAX_DELAY_MS", 30000)
    ERP_TOKEN_REFRESH_BUFFER_SECONDS = _int_env("ERP_TOKEN_REFRESH_BUFFER_SECONDS", 300)

    COVERAGE_DEFAULT_LEAD_TIME_DAYS = _int_env("COVERAGE_DEFAULT_LEAD_TIME_DAYS", 15)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL nao definida para ambiente de producao.")
        if env == "production" and self.SECRET_KEY == "dev-secret-orderflow":
            raise RuntimeError("SECRET_KEY insegura para producao.")
        if env == "production" and self.ERP_MODE == "http" and not (self.ERP_CLIENT_ID and self.ERP_CLIENT_SECRET):
            raise RuntimeError("ERP_CLIENT_ID/ERP_CLIENT_SECRET obrigatorios com ERP_MODE=http.")
