"""Runtime settings."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REWRITEGATE_", extra="ignore")

    app_name: str = "RewriteGate"
    log_level: str = "info"
    host: str = "0.0.0.0"
    # 平台（Cloud Run / Heroku 等）通过 PORT 注入监听端口
    port: int = Field(default=8080, validation_alias=AliasChoices("PORT", "REWRITEGATE_PORT"))

    upstream_base_url: str = "https://giscus.app"
    upstream_timeout_seconds: float = 60.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    # 字面量匹配，\u003c 等为上游 JSON 中的原始转义文本，不做反转义
    rewrite_pattern: str = r'"poweredBy": "– powered by \u003ca\u003egiscus\u003c/a\u003e"'
    rewrite_replacement: str = '"poweredBy": ""'
    # Content-Type 子串白名单，逗号分隔；命中任一即改写响应体
    textual_content_markers: str = "json,text,javascript"


settings = Settings()
