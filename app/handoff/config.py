# app/handoff/config.py
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class HandoffSettings(BaseSettings):
    # Expiry of unclaimed handoffs; None leaves pending handoffs open indefinitely
    pickup_timeout_minutes: Optional[int] = None
    sweep_interval_seconds: int = 60
    sweeper_enabled: bool = True

    # Agents without a heartbeat for this long are marked offline; None disables
    agent_offline_after_seconds: Optional[int] = 120

    # Chat configuration
    default_max_chats: int = 5
    poll_interval_seconds: int = 3
    max_message_length: int = 4000

    # Notification settings
    enable_email_notifications: bool = True

    model_config = SettingsConfigDict(env_prefix="HANDOFF_", env_file=".env", extra="ignore")


settings = HandoffSettings()
