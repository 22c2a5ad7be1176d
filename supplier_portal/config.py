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


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    PORTAL_DATABASE_URL = os.environ.get("PORTAL_DATABASE_URL")
    DATABASE_DIR = None if PORTAL_DATABASE_URL else os.path.join(BASE_DIR, "database")
    PORTAL_DB_PATH = PORTAL_DATABASE_URL or os.path.join(DATABASE_DIR, "portal.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Catalogo de empresas: JSON inline ou caminho para arquivo JSON.
    TENANT_CATALOG = os.environ.get("TENANT_CATALOG")
    TENANT_ENVIRONMENT = os.environ.get("TENANT_ENVIRONMENT", "test")
    TENANT_DATABASE_URL_PROD = os.environ.get("TENANT_DATABASE_URL_PROD")
    TENANT_DATABASE_URL_TEST = os.environ.get("TENANT_DATABASE_URL_TEST")

    TENANT_PROBE_TIMEOUT_SECONDS = _float_env("TENANT_PROBE_TIMEOUT_SECONDS", 10.0)
    TENANT_PROBE_MAX_WORKERS = _int_env("TENANT_PROBE_MAX_WORKERS", 4)
    TENANT_CONNECT_RETRY_ATTEMPTS = _int_env("TENANT_CONNECT_RETRY_ATTEMPTS", 2)
    TENANT_CONNECT_BACKOFF_MS = _int_env("TENANT_CONNECT_BACKOFF_MS", 300)
    TENANT_CONNECT_TIMEOUT_SECONDS = _int_env("TENANT_CONNECT_TIMEOUT_SECONDS", 10)
    TENANT_POOL_MIN_CONNECTIONS = _int_env("TENANT_POOL_MIN_CONNECTIONS", 1)
    TENANT_POOL_MAX_CONNECTIONS = _int_env("TENANT_POOL_MAX_CONNECTIONS", 10)

    TENANT_CIRCUIT_ENABLED = _bool_env("TENANT_CIRCUIT_ENABLED", True)
    TENANT_CIRCUIT_ERROR_RATE_THRESHOLD = _float_env("TENANT_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6)
    TENANT_CIRCUIT_MIN_SAMPLES = _int_env("TENANT_CIRCUIT_MIN_SAMPLES", 3)
    TENANT_CIRCUIT_WINDOW_SECONDS = _int_env("TENANT_CIRCUIT_WINDOW_SECONDS", 120)
    TENANT_CIRCUIT_OPEN_SECONDS = _int_env("TENANT_CIRCUIT_OPEN_SECONDS", 30)
    TENANT_CIRCUIT_HALF_OPEN_MAX_CALLS = _int_env("TENANT_CIRCUIT_HALF_OPEN_MAX_CALLS", 1)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.PORTAL_DATABASE_URL:
            raise RuntimeError("PORTAL_DATABASE_URL nao definida para ambiente de producao.")
