"""
Gateway-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway credentials can be rotated independently.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class GatewayTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 5.0
    write: float = 5.0
    total: float = 10.0


class GatewayRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    timeout: float = 10.0
    max_retries: int = 5
    signature_header: str = "X-Webhook-Signature"


class BkashSettings(BaseModel):
    base_url: str = "https://tokenized.sandbox.bka.sh/v1.2.0-beta"
    app_key: Optional[str] = None
    app_secret: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    callback_url: Optional[str] = None


class GatewaySettings(BaseSettings):
    timeouts: GatewayTimeouts = Field(default_factory=GatewayTimeouts)
    retry: GatewayRetry = Field(default_factory=GatewayRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    bkash: BkashSettings = Field(default_factory=BkashSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="GATEWAY__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


gateway_settings = GatewaySettings()
