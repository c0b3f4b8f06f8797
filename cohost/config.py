from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./cohost.db"
    debug: bool = False
    log_level: str = "INFO"
    admin_token: Optional[str] = None

    # Context assembly
    history_limit: int = 10
    context_timeout_seconds: float = 3.0
    context_max_attempts: int = 2

    # Escalation
    sentiment_threshold: float = 0.7
    sentiment_timeout_seconds: float = 1.5
    sentiment_scorer: str = "lexicon"  # lexicon, llm
    send_holding_message: bool = True

    # Composition
    intent_confidence_threshold: float = 0.6
    generation_timeout_seconds: float = 8.0
    generation_max_attempts: int = 3
    generation_backoff_seconds: float = 0.5
    brand_voice_path: Optional[str] = None
    templates_path: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Response cache
    cache_default_ttl_seconds: int = 3600
    cache_max_entries: int = 1024

    # Dispatch
    dispatch_max_attempts: int = 4
    dispatch_backoff_seconds: float = 0.5
    dispatch_backoff_max_seconds: float = 8.0
    dispatch_timeout_seconds: float = 10.0
    platform_api_base_urls: Dict[str, str] = {}
    platform_api_tokens: Dict[str, str] = {}

    # Conversation state
    max_tracked_conversations: int = 10_000

    # Backpressure
    property_max_concurrency: int = 4
    property_queue_depth: int = 32

    # Human notification
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
