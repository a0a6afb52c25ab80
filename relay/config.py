"""Configuration management using Pydantic settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application Settings
    environment: str = "development"
    port: int = 8000
    host: str = "0.0.0.0"
    log_level: str = "INFO"
    debug: bool = False
    hot_reload: bool = True

    # Twilio WhatsApp (channel B, form-encoded webhooks)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""
    verify_webhook_signature: bool = False

    # Meta WhatsApp Cloud API (channel A, JSON webhooks)
    meta_phone_number_id: str = ""
    meta_access_token: str = ""
    meta_verify_token: str = ""
    meta_graph_url: str = "https://graph.facebook.com/v20.0"

    # AWS
    aws_region: str = "us-west-2"
    history_bucket: str = "toori-chat-history"
    media_bucket: str = "toori360"

    # History backend: "s3" or "supabase"
    history_store_backend: str = "s3"
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_history_bucket: str = "chat-history"

    # Conversation tuning
    max_turns: int = 12
    dedup_window: int = 10
    backup_retention: int = 3
    dedup_without_message_id: str = "off"  # Options: off, content_hash
    dedup_content_hash_window_seconds: int = 120

    # Audio Transcription (AWS Transcribe)
    transcription_language_code: str = "es-AR"
    transcription_poll_interval: float = 1.0
    transcription_max_attempts: int = 60

    # Generation backend
    backend_url: str = "http://localhost:3000/api/chat"
    backend_timeout: float = 15.0

    # Outbound dispatcher
    fragment_soft_limit: int = 300
    fragment_delay_seconds: float = 0.8

    # Rate Limiting
    rate_limit_per_minute: int = 60

    # Monitoring (Optional)
    sentry_dsn: str = ""
    enable_sentry: bool = False

    # User-facing fallback messages
    audio_fallback_message: str = (
        "He recibido tu mensaje de audio pero no pude entender lo que dijiste. "
        "¿Podrías escribirme o enviar el audio de nuevo?"
    )
    technical_error_message: str = (
        "Tuvimos un problema técnico procesando tu mensaje. Probá de nuevo en unos minutos."
    )
    backend_timeout_message: str = (
        "Lo siento, el servicio está tardando mucho en responder. Intentá más tarde."
    )
    empty_message_placeholder: str = "mensaje vacío"
    first_contact_greeting: str = "hola"

    @property
    def history_window_size(self) -> int:
        """Number of user/assistant turns passed downstream."""
        return self.max_turns * 2

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


# Global settings instance
settings = Settings()
