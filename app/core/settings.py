from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    supabase_url: str
    supabase_anon_key: str
    gemini_api_key: str
    gemini_base_url: str
    model_fast: str
    model_pro: str
    model_image_edit: str
    model_image_gen: str
    ai_timeout_seconds: float
    store_timeout_seconds: float
    ai_pending_grace_seconds: int
    password_reset_redirect_url: str | None = None
    # the auth session is process-wide; loopback unless HOST is set
    host: str = "127.0.0.1"
    port: int = 8000

    @staticmethod
    def from_env() -> "Settings":
        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            supabase_url=os.getenv("SUPABASE_URL", "").strip().rstrip("/"),
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY", "").strip(),
            gemini_api_key=(os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY") or "").strip(),
            gemini_base_url=os.getenv(
                "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
            ).strip().rstrip("/"),
            model_fast=os.getenv("MODEL_FAST", "gemini-2.5-flash").strip(),
            model_pro=os.getenv("MODEL_PRO", "gemini-2.5-pro").strip(),
            model_image_edit=os.getenv("MODEL_IMAGE_EDIT", "gemini-2.5-flash-image").strip(),
            model_image_gen=os.getenv("MODEL_IMAGE_GEN", "imagen-4.0-generate-001").strip(),
            ai_timeout_seconds=_f("AI_TIMEOUT_SECONDS", "120"),
            store_timeout_seconds=_f("STORE_TIMEOUT_SECONDS", "30"),
            ai_pending_grace_seconds=_i("AI_PENDING_GRACE_SECONDS", "15"),
            password_reset_redirect_url=os.getenv("PASSWORD_RESET_REDIRECT_URL", "").strip() or None,
            host=os.getenv("HOST", "127.0.0.1").strip(),
            port=_i("PORT", "8000"),
        )
