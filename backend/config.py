"""
Configuration management for the storefront checkout service.

Loads settings from .env via pydantic-settings.

Gateway and SMS credentials are exposed to services as explicit,
closed config structs (BkashGatewayConfig, SslcommerzGatewayConfig,
SmsConfig) so every operation receives its configuration as an argument
instead of reading a shared settings blob.
"""
import logging
from typing import List

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class BkashGatewayConfig(BaseModel):
    """bKash tokenized checkout (hosted gateway A)."""
    enabled: bool = False
    app_key: str = ""
    app_secret: str = ""
    username: str = ""
    password: str = ""
    sandbox: bool = True
    timeout_seconds: float = 15.0

    @property
    def base_url(self) -> str:
        if self.sandbox:
            return "https://tokenized.sandbox.bka.sh/v1.2.0-beta"
        return "https://tokenized.pay.bka.sh/v1.2.0-beta"

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.app_key and self.app_secret)


class SslcommerzGatewayConfig(BaseModel):
    """SSLCommerz hosted payment page (hosted gateway B)."""
    enabled: bool = False
    store_id: str = ""
    store_password: str = ""
    sandbox: bool = True
    timeout_seconds: float = 15.0

    @property
    def base_url(self) -> str:
        if self.sandbox:
            return "https://sandbox.sslcommerz.com"
        return "https://securepay.sslcommerz.com"

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.store_id and self.store_password)


class SmsConfig(BaseModel):
    """Outbound SMS provider and message templates."""
    enabled: bool = False
    api_url: str = "http://bulksmsbd.net/api/smsapi"
    api_key: str = ""
    sender_id: str = ""
    timeout_seconds: float = 10.0
    otp_template: str = "Your {store_name} verification code is: {otp}. Valid for {minutes} minutes."
    order_confirmation_template: str = (
        "Dear {customer_name}, your order #{order_number} has been confirmed! "
        "Total: {total}. Thank you for shopping with {store_name}!"
    )
    order_shipped_template: str = (
        "Dear {customer_name}, your order #{order_number} has been shipped! - {store_name}"
    )
    order_delivered_template: str = (
        "Dear {customer_name}, your order #{order_number} has been delivered! "
        "Thank you for shopping with {store_name}!"
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/storefront.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"
    store_name: str = "Puritya"
    public_base_url: str = "http://localhost:8000"

    # ── Orders ──────────────────────────────────────────────────────
    order_number_prefix: str = "ORD"
    order_number_max_attempts: int = 2   # first try + one retry on collision
    require_guest_otp: bool = False

    # ── OTP ─────────────────────────────────────────────────────────
    otp_ttl_seconds: int = 300
    otp_resend_cooldown_seconds: int = 60
    otp_max_attempts: int = 3
    otp_verified_window_seconds: int = 1800

    # ── Auth (JWT) ──────────────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "storefront-api"
    jwt_access_ttl_minutes: int = 60

    # ── Payment gateways ───────────────────────────────────────────
    gateway_timeout_seconds: float = 15.0

    bkash_enabled: bool = False
    bkash_app_key: str = ""
    bkash_app_secret: str = ""
    bkash_username: str = ""
    bkash_password: str = ""
    bkash_sandbox: bool = True

    sslcommerz_enabled: bool = False
    sslcommerz_store_id: str = ""
    sslcommerz_store_password: str = ""
    sslcommerz_sandbox: bool = True

    # ── SMS ─────────────────────────────────────────────────────────
    sms_enabled: bool = False
    sms_api_url: str = "http://bulksmsbd.net/api/smsapi"
    sms_api_key: str = ""
    sms_sender_id: str = ""

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    def bkash_config(self) -> BkashGatewayConfig:
        return BkashGatewayConfig(
            enabled=self.bkash_enabled,
            app_key=self.bkash_app_key,
            app_secret=self.bkash_app_secret,
            username=self.bkash_username,
            password=self.bkash_password,
            sandbox=self.bkash_sandbox,
            timeout_seconds=self.gateway_timeout_seconds,
        )

    def sslcommerz_config(self) -> SslcommerzGatewayConfig:
        return SslcommerzGatewayConfig(
            enabled=self.sslcommerz_enabled,
            store_id=self.sslcommerz_store_id,
            store_password=self.sslcommerz_store_password,
            sandbox=self.sslcommerz_sandbox,
            timeout_seconds=self.gateway_timeout_seconds,
        )

    def sms_config(self) -> SmsConfig:
        return SmsConfig(
            enabled=self.sms_enabled,
            api_url=self.sms_api_url,
            api_key=self.sms_api_key,
            sender_id=self.sms_sender_id,
        )

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.jwt_secret:
                raise ValueError("JWT_SECRET must be set in production.")
            if self.bkash_enabled and self.bkash_sandbox:
                raise ValueError("BKASH_SANDBOX must be false in production.")
            if self.sslcommerz_enabled and self.sslcommerz_sandbox:
                raise ValueError("SSLCOMMERZ_SANDBOX must be false in production.")
            logger.info("Production settings validated")
        else:
            logger.info(f"Running in {self.environment} mode")


settings = Settings()
