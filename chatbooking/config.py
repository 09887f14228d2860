"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings

log = logging.getLogger("chatbooking.config")

DEFAULT_REVIEW_DELAY_HOURS = 3.0


class Settings(BaseSettings):
    # Google Calendar
    google_service_account_json: str = ""
    google_calendar_id: str = "primary"
    calendar_timeout_seconds: float = 10.0

    # Availability cache
    availability_cache_ttl_seconds: int = 120
    availability_cache_max_entries: int = 2048

    # Reviews
    review_delay_hours: float = DEFAULT_REVIEW_DELAY_HOURS
    review_lookback_days: int = 30

    # Instagram messaging
    instagram_page_access_token: str = ""
    instagram_graph_version: str = "v21.0"
    send_timeout_seconds: float = 10.0

    # Flows shipped with the deployment
    flows_dir: str = ""

    # Admin / cron auth
    admin_api_key: str = ""
    cron_secret: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    # User-facing texts
    fallback_message: str = (
        "Entschuldigung, da ist etwas schiefgelaufen. Bitte versuche es gleich noch einmal."
    )
    not_understood_message: str = (
        "Ich habe dich nicht verstanden. Bitte schreibe kurz, wobei ich helfen kann."
    )
    not_understood_with_keywords: str = (
        "Ich habe dich nicht verstanden. Du kannst z. B. schreiben: {keywords}."
    )
    selection_unavailable_message: str = (
        "Diese Auswahl ist nicht mehr verfügbar. Bitte starte den Ablauf erneut."
    )
    text_received_message: str = "Danke, wir haben deine Nachricht erhalten."
    slot_unavailable_message: str = "Leider ist der gewünschte Termin nicht verfügbar."
    availability_error_message: str = (
        "Wir konnten den Kalender gerade nicht prüfen. Bitte versuche es in ein paar "
        "Minuten erneut oder nenne eine alternative Zeit."
    )
    store_error_message: str = (
        "Wir konnten deine Buchung gerade nicht speichern. Bitte versuche es gleich noch einmal."
    )
    calendar_warning_message: str = (
        "Dein Termin wurde gespeichert. Der Kalender konnte gerade nicht aktualisiert werden."
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator("review_delay_hours", mode="before")
    @classmethod
    def _positive_delay(cls, value):
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return DEFAULT_REVIEW_DELAY_HOURS
        if parsed != parsed or parsed <= 0:
            return DEFAULT_REVIEW_DELAY_HOURS
        return parsed

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"path/to/service-account.json", "EAAG..."}

        if self.availability_cache_ttl_seconds < 0:
            raise ValueError("AVAILABILITY_CACHE_TTL_SECONDS must not be negative.")

        if not self.admin_api_key:
            if self.debug:
                warnings.append("ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true).")
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        if not self.cron_secret:
            warnings.append(
                "CRON_SECRET not set. The review sweep endpoint is locked unless DEBUG=true."
            )

        if self.google_service_account_json in _placeholders:
            warnings.append(
                "GOOGLE_SERVICE_ACCOUNT_JSON is a placeholder. Calendar integration disabled."
            )

        if not self.instagram_page_access_token or self.instagram_page_access_token in _placeholders:
            warnings.append(
                "INSTAGRAM_PAGE_ACCESS_TOKEN not set. Review requests cannot be delivered."
            )

        return warnings


settings = Settings()
