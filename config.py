"""Global configuration for ImgRouter."""

import os
from dataclasses import dataclass


@dataclass
class Settings:
    # Default gateway/admin access token (seeded into the store on first run)
    access_token: str = os.environ.get("IMGROUTER_ACCESS_TOKEN", "")

    # Database
    db_path: str = os.environ.get("IMGROUTER_DB_PATH", "imgrouter.db")

    # Key seed file (first run only)
    keys_yaml: str = os.environ.get("IMGROUTER_KEYS_YAML", "keys.yaml")

    # Server
    host: str = os.environ.get("IMGROUTER_HOST", "0.0.0.0")
    port: int = int(os.environ.get("IMGROUTER_PORT", "10001"))

    # Upstream calls (seconds, per HTTP call)
    request_timeout: float = float(os.environ.get("IMGROUTER_REQUEST_TIMEOUT", "120"))

    # Provider endpoints
    volcengine_url: str = os.environ.get(
        "IMGROUTER_VOLCENGINE_URL",
        "https://ark.cn-beijing.volces.com/api/v3/images/generations",
    )
    gitee_url: str = os.environ.get(
        "IMGROUTER_GITEE_URL", "https://ai.gitee.com/v1/images/generations"
    )
    modelscope_url: str = os.environ.get(
        "IMGROUTER_MODELSCOPE_URL", "https://api-inference.modelscope.cn/v1"
    )

    # Logging
    log_level: str = os.environ.get("IMGROUTER_LOG_LEVEL", "INFO")


settings = Settings()
