"""HTTP client for the Anthropic and OpenAI chat APIs, with persisted settings."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from mimiclaw.llm_payload import (
    ANTHROPIC,
    DEFAULT_MAX_TOOL_CALLS,
    LLMResponse,
    build_chat_body,
    build_tools_body,
    extract_text_anthropic,
    extract_text_openai,
    is_openai,
    parse_tools_response_anthropic,
    parse_tools_response_openai,
    preview_payload,
)

_log = logging.getLogger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_MODEL = "claude-opus-4-5"
DEFAULT_MAX_TOKENS = 4096
REQUEST_TIMEOUT = 120.0
NO_RESPONSE_TEXT = "No response from LLM API"

_API_KEY_LEN = 319
_MODEL_LEN = 63
_PROVIDER_LEN = 15
_SETTING_KEYS = ("api_key", "model", "provider")


class LLMError(Exception):
    """Raised when a chat request fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MissingApiKeyError(LLMError):
    """No API key has been configured."""


def load_settings(path: str | Path | None) -> dict[str, str]:
    """Read saved overrides; a missing or malformed file yields an empty dict."""
    if path is None:
        return {}
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(data, dict):
        return {}
    return {
        key: data[key]
        for key in _SETTING_KEYS
        if isinstance(data.get(key), str) and data[key]
    }


class LLMClient:
    """Sends chat requests to the configured provider and parses the replies."""

    def __init__(
        self,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        provider: str = ANTHROPIC,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        settings_path: str | Path | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = ""
        self.model = DEFAULT_MODEL
        self.provider = ANTHROPIC
        if api_key:
            self.api_key = api_key[:_API_KEY_LEN]
        if model:
            self.model = model[:_MODEL_LEN]
        if provider:
            self.provider = provider[:_PROVIDER_LEN]
        self.max_tokens = max_tokens
        self._settings_path = Path(settings_path) if settings_path is not None else None

        saved = load_settings(self._settings_path)
        if "api_key" in saved:
            self.api_key = saved["api_key"][:_API_KEY_LEN]
        if "model" in saved:
            self.model = saved["model"][:_MODEL_LEN]
        if "provider" in saved:
            self.provider = saved["provider"][:_PROVIDER_LEN]

        self._owns_http = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(
            timeout=REQUEST_TIMEOUT
        )

        if self.api_key:
            _log.info(
                "LLM proxy initialized (provider: %s, model: %s)", self.provider, self.model
            )
        else:
            _log.warning("No API key configured")

    def __enter__(self) -> LLMClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_http:
            self._http.close()

    @property
    def api_url(self) -> str:
        return OPENAI_API_URL if is_openai(self.provider) else ANTHROPIC_API_URL

    def _store(self, key: str, value: str) -> None:
        if self._settings_path is None:
            return
        settings = load_settings(self._settings_path)
        settings[key] = value
        self._settings_path.write_text(json.dumps(settings, indent=2), encoding="utf-8")

    def set_api_key(self, api_key: str) -> None:
        """Save the API key and use it from now on."""
        self._store("api_key", api_key)
        self.api_key = api_key[:_API_KEY_LEN]
        _log.info("API key saved")

    def set_model(self, model: str) -> None:
        """Save the model identifier and use it from now on."""
        self._store("model", model)
        self.model = model[:_MODEL_LEN]
        _log.info("Model set to: %s", self.model)

    def set_provider(self, provider: str) -> None:
        """Save the provider name ("anthropic" or "openai") and use it from now on."""
        self._store("provider", provider)
        self.provider = provider[:_PROVIDER_LEN]
        _log.info("Provider set to: %s", self.provider)

    def _require_key(self) -> None:
        if not self.api_key:
            raise MissingApiKeyError("No API key configured")

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if is_openai(self.provider):
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            headers["x-api-key"] = self.api_key
            headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    def _post(self, body: dict[str, Any], label: str) -> tuple[int, str]:
        post_data = json.dumps(body, separators=(",", ":"), ensure_ascii=False)
        _log.info(
            "Calling LLM API (provider: %s, model: %s, body: %d bytes)",
            self.provider, self.model, len(post_data.encode("utf-8")),
        )
        _log.info("%s %s", label, preview_payload(post_data))
        try:
            response = self._http.post(
                self.api_url, content=post_data.encode("utf-8"), headers=self._headers()
            )
        except httpx.HTTPError as exc:
            _log.error("HTTP request failed: %s", exc)
            raise LLMError(f"HTTP request failed ({exc})") from exc
        text = response.text
        _log.info("%s raw response %s", label, preview_payload(text))
        return response.status_code, text

    @staticmethod
    def _parse_json(text: str) -> Any:
        try:
            return json.loads(text)
        except ValueError:
            _log.error("Failed to parse API response JSON")
            raise LLMError("Failed to parse response") from None

    def chat(self, system_prompt: str | None, messages_json: str) -> str:
        """Send a plain chat request and return the reply text."""
        self._require_key()
        body = build_chat_body(
            self.provider, self.model, self.max_tokens, system_prompt, messages_json
        )
        status, text = self._post(body, "LLM request")
        if status != 200:
            _log.error("API returned status %d", status)
            raise LLMError(f"API error (HTTP {status}): {text[:200]}", status=status)
        root = self._parse_json(text)
        if is_openai(self.provider):
            reply = extract_text_openai(root)
        else:
            reply = extract_text_anthropic(root)
        if not reply:
            return NO_RESPONSE_TEXT
        _log.info("LLM response: %d bytes", len(reply.encode("utf-8")))
        return reply

    def chat_tools(
        self,
        system_prompt: str | None,
        messages: Any,
        tools_json: str | None,
    ) -> LLMResponse:
        """Send a chat request with tool definitions and return text and tool calls."""
        self._require_key()
        body = build_tools_body(
            self.provider, self.model, self.max_tokens, system_prompt, messages, tools_json
        )
        status, text = self._post(body, "LLM tools request")
        if status != 200:
            _log.error("API error %d: %s", status, text[:500])
            raise LLMError(f"API error (HTTP {status}): {text[:500]}", status=status)
        root = self._parse_json(text)
        if is_openai(self.provider):
            resp = parse_tools_response_openai(root, DEFAULT_MAX_TOOL_CALLS)
        else:
            resp = parse_tools_response_anthropic(root, DEFAULT_MAX_TOOL_CALLS)
        _log.info(
            "Response: %d bytes text, %d tool calls, stop=%s",
            len(resp.text.encode("utf-8")), len(resp.calls),
            "tool_use" if resp.tool_use else "end_turn",
        )
        return resp