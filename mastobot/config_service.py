from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import yaml

DEFAULT_ERROR_MESSAGE = "Sorry, I can't answer that one."
DEFAULT_GEMINI_MODELS = "gemini-2.0-flash,gemini-2.0-flash-lite"
DEFAULT_OPENAI_MODELS = "gpt-4o-mini"


@dataclass
class Config:
    raw: dict


def _split_csv(value) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v.strip() for v in str(value or "").split(",") if v.strip()]


class ConfigService:
    """YAML-backed settings with environment overrides.

    Environment variables (usually from .env) win over config.yaml for
    credentials, model names and the handful of settings operators tend to
    change per deployment. A missing or unreadable file yields defaults.
    """

    def __init__(self, path: str | Path, env: dict | None = None):
        self._path = Path(path)
        self._env = env if env is not None else os.environ
        self._cfg = Config(raw=self._read())
        try:
            self._mtime_ns = self._path.stat().st_mtime_ns
        except OSError:
            self._mtime_ns = 0

    def _read(self) -> dict:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            return {}
        return data if isinstance(data, dict) else {}

    def _maybe_reload(self) -> None:
        try:
            m = self._path.stat().st_mtime_ns
        except OSError:
            return
        if m != getattr(self, "_mtime_ns", 0):
            data = self._read()
            # On read error, keep previous config
            if data or not self._cfg.raw:
                self._cfg = Config(raw=data)
            self._mtime_ns = m

    def _section(self, name: str) -> dict:
        self._maybe_reload()
        v = self._cfg.raw.get(name, {})
        return v if isinstance(v, dict) else {}

    def _env_get(self, name: str) -> str | None:
        v = self._env.get(name)
        if v is None or str(v).strip() == "":
            return None
        return str(v)

    # ---------- Mastodon ----------
    def mastodon_server(self) -> str:
        v = self._env_get("MASTODON_SERVER") or self._section("mastodon").get("server") or ""
        return str(v).rstrip("/")

    def mastodon_access_token(self) -> str:
        return self._env_get("MASTODON_ACCESS_TOKEN") or ""

    def mastodon_domain(self) -> str:
        server = self.mastodon_server()
        return server.split("://", 1)[1] if "://" in server else server

    def reconnect_delay_seconds(self) -> float:
        try:
            return float(self._section("stream").get("reconnect_delay_seconds", 5))
        except (TypeError, ValueError):
            return 5.0

    # ---------- Model ----------
    def model(self) -> dict:
        return self._section("model")

    def llm_provider(self) -> str:
        v = self._env_get("LLM_PROVIDER") or self.model().get("provider") or "gemini"
        return str(v).strip().lower()

    def model_names(self) -> list[str]:
        provider = self.llm_provider()
        if provider == "gemini":
            names = _split_csv(self._env_get("GEMINI_MODEL") or self.model().get("models") or DEFAULT_GEMINI_MODELS)
        else:
            names = _split_csv(self._env_get("OPENAI_MODEL") or self.model().get("models") or DEFAULT_OPENAI_MODELS)
        return names or _split_csv(DEFAULT_GEMINI_MODELS if provider == "gemini" else DEFAULT_OPENAI_MODELS)

    def gemini_api_key(self) -> str | None:
        return self._env_get("GEMINI_API_KEY")

    def openai_api_key(self) -> str | None:
        return self._env_get("OPENAI_API_KEY")

    def openai_base_url(self) -> str:
        return self._env_get("OPENAI_BASE_URL") or str(self.model().get("openai_base_url", "https://api.openai.com/v1"))

    def temperature(self) -> float:
        try:
            return float(self.model().get("temperature", 1.8))
        except (TypeError, ValueError):
            return 1.8

    def max_tokens(self) -> int:
        try:
            return int(self.model().get("max_tokens", 1024))
        except (TypeError, ValueError):
            return 1024

    def request_timeout_seconds(self) -> float:
        try:
            return float(self.model().get("timeout_seconds", 60))
        except (TypeError, ValueError):
            return 60.0

    def max_context_length(self) -> int:
        v = self._env_get("MAX_CONTEXT_LENGTH") or self.model().get("max_context_length", 10)
        try:
            return max(1, int(v))
        except (TypeError, ValueError):
            return 10

    def model_capabilities(self) -> dict[str, dict]:
        """Explicit per-backend capability table, e.g. ``{"gemini-2.0-flash": {"images": true}}``."""
        caps = self.model().get("capabilities") or {}
        if not isinstance(caps, dict):
            return {}
        return {str(k): dict(v) for k, v in caps.items() if isinstance(v, dict)}

    def error_patterns(self) -> dict[str, list[str]]:
        pats = self.model().get("error_patterns") or {}
        if not isinstance(pats, dict):
            return {}
        out: dict[str, list[str]] = {}
        for kind in ("rate_limit", "not_found"):
            v = pats.get(kind)
            if isinstance(v, (list, tuple)) and v:
                out[kind] = [str(p) for p in v]
        return out

    # ---------- Replies & prompts ----------
    def error_message(self) -> str:
        return self._env_get("ERROR_MESSAGE") or str(self._section("replies").get("error_message") or DEFAULT_ERROR_MESSAGE)

    def timezone(self) -> str | None:
        return self._env_get("TZ") or self._section("replies").get("timezone") or None

    def data_dir(self) -> Path:
        return Path(self._env_get("DATA_DIR") or self._section("prompts").get("data_dir") or "data")

    def include_past_posts(self) -> bool:
        return bool(self._section("prompts").get("include_past_posts", True))

    def past_posts_limit(self) -> int:
        try:
            return int(self._section("prompts").get("past_posts_limit", 20))
        except (TypeError, ValueError):
            return 20

    def leak_guard_prompt(self) -> str:
        """Text whose appearance in a reply means the prompt leaked.

        SYSTEM_PROMPT_PATH (file) wins over SYSTEM_PROMPT (inline). Unset or
        unreadable yields "" and the caller falls back to the default prompt file.
        """
        path = self._env_get("SYSTEM_PROMPT_PATH")
        if path:
            try:
                return Path(path).read_text(encoding="utf-8").strip()
            except OSError:
                pass
        return (self._env_get("SYSTEM_PROMPT") or "").strip()

    def extra_blocked_patterns(self) -> list[str]:
        v = self._section("safety").get("extra_blocked_patterns") or []
        return [str(p) for p in v] if isinstance(v, (list, tuple)) else []

    # ---------- Sessions ----------
    def session_ttl_seconds(self) -> float:
        try:
            return float(self._section("session").get("ttl_hours", 24)) * 3600.0
        except (TypeError, ValueError):
            return 24 * 3600.0

    def max_sessions(self) -> int:
        try:
            return int(self._section("session").get("max_sessions", 1000))
        except (TypeError, ValueError):
            return 1000

    def sweep_interval_seconds(self) -> float:
        try:
            return float(self._section("session").get("sweep_interval_seconds", 3600))
        except (TypeError, ValueError):
            return 3600.0

    # ---------- Logging ----------
    def log_level(self) -> str:
        return str(self._env_get("LOG_LEVEL") or self._cfg.raw.get("LOG_LEVEL", "INFO")).upper()

    def lib_log_level(self) -> str | None:
        v = self._env_get("LIB_LOG_LEVEL") or self._cfg.raw.get("LIB_LOG_LEVEL")
        return str(v).upper() if v else None

    def log_console(self) -> bool:
        return bool(self._cfg.raw.get("LOG_CONSOLE", False))

    def log_errors(self) -> bool:
        return bool(self._cfg.raw.get("LOG_ERRORS", False))

    # ---------- Startup validation ----------
    def missing_required_env(self) -> list[str]:
        """Names of mandatory settings that are absent for the configured provider."""
        missing = []
        if not self.mastodon_server():
            missing.append("MASTODON_SERVER")
        if not self.mastodon_access_token():
            missing.append("MASTODON_ACCESS_TOKEN")
        if self.llm_provider() == "gemini" and not self.gemini_api_key():
            missing.append("GEMINI_API_KEY")
        return missing
