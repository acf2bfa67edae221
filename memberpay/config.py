from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"
    log_level: str = "INFO"

    database_url: str
    service_api_key: str

    default_currency: str = "KES"
    invoice_prefix: str = "INV"
    membership_number_prefix: str = "MEM"

    # M-Pesa (push payment)
    mpesa_env: str = "sandbox"  # sandbox | production
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_passkey: str = ""
    mpesa_shortcode: str = ""
    mpesa_callback_url: str = ""
    mpesa_transaction_desc: str = "Membership Payment"

    # PayPal (redirect payment)
    paypal_env: str = "sandbox"  # sandbox | live
    paypal_client_id: str = ""
    paypal_secret: str = ""
    paypal_return_url: Optional[str] = None
    paypal_cancel_url: Optional[str] = None

    # Stripe (intent payment)
    stripe_api_base: str = "https://api.stripe.com/v1"
    stripe_secret_key: str = ""

    gateway_timeout_seconds: float = 30.0

    # how long a notification waits for its gateway reference to be attached
    webhook_reference_attempts: int = 3
    webhook_reference_delay_seconds: float = 0.5

    @property
    def mpesa_api_base(self) -> str:
        if self.mpesa_env == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def paypal_api_base(self) -> str:
        if self.paypal_env == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

settings = Settings()
