"""
Application configuration — loaded from environment / .env file.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # ── App ──
    app_name: str = "bloodmatch"
    app_env: str = "development"
    log_level: str = "INFO"

    # ── Scoring model ──
    scoring_model_version: str = "1.0"
    scoring_model_path: Optional[str] = "ml-models/trained/donor_match.joblib"
    scoring_fallback_seed: int = 42

    # ── Matching ──
    candidate_fetch_limit: int = 100
    default_match_limit: int = 10
    match_expiry_hours: int = 24
    notify_top_n: int = 1
    location_max_age_seconds: int = 6 * 3600

    # ── Urgent broadcast ──
    broadcast_radius_km: float = 50.0
    broadcast_donor_limit: int = 100

    # ── Periodic sweep ──
    sweep_window_minutes: int = 120
    sweep_match_limit: int = 5
    sweep_concurrency: int = 4

    # ── Datastore boundary ──
    store_read_attempts: int = 3
    store_read_backoff_seconds: float = 0.2

    # ── Rewards (recorded only, payout is external) ──
    donation_reward_amount: float = 10.0

    # ── Kafka (realtime bus) ──
    kafka_bootstrap: str = "kafka:9092"
    kafka_topic_urgent_requests: str = "bloodmatch.requests.urgent"
    kafka_enabled: bool = False  # toggle for local dev

    # ── Notification gateway ──
    notification_gateway_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
