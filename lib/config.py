from typing import Dict, Optional
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra='ignore')

    environment: str = 'development'

    # OpenAI settings
    openai_api_key: str = ''
    openai_model: str = 'gpt-4o'
    openai_timeout_seconds: float = 5.0
    openai_daily_token_limit: int = 100000
    enable_openai_fallback: bool = True

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_phone_number: str = ''
    validate_twilio_signature: Optional[bool] = None

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''

    # Stripe settings
    stripe_secret_key: str = ''
    stripe_webhook_secret: str = ''
    stripe_price_basic: str = ''
    stripe_price_pro: str = ''
    stripe_price_enterprise: str = ''

    # Sentry
    sentry_dsn: str = ''

    # Routing
    webhook_base_url: str = ''
    default_owner_phone: str = ''
    fallback_forwarding: str = ''

    # Rate limiting
    sms_cooldown_seconds: int = 600
    inbound_rate_limit: int = 20
    inbound_rate_window_seconds: int = 600

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

    @property
    def signature_validation_enabled(self) -> bool:
        if self.validate_twilio_signature is None:
            return self.is_production
        return self.validate_twilio_signature

    @property
    def stripe_price_ids(self) -> Dict[str, str]:
        return {
            'basic': self.stripe_price_basic,
            'pro': self.stripe_price_pro,
            'enterprise': self.stripe_price_enterprise,
        }

def get_settings() -> Settings:
    return Settings()
