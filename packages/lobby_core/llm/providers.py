"""Provider adapter for the Evaluation Service.

This module uses an OpenAI-compatible Chat Completions API contract so a
single integration path can work across multiple model vendors. It returns
the raw completion text; verdict extraction happens in ``json_extract``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib import error, request
import json
import os

from .policy import estimate_token_count


DEFAULT_OPENAI_COMPATIBLE_BASE_URL = "https://api.openai.com/v1"
SUPPORTED_PROVIDERS = {"openai_compatible"}
DEFAULT_MODEL_BY_TIER = {
    "strong": "gpt-4o",
    "fast": "gpt-4o-mini",
    "cheap": "gpt-4o-mini",
}


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _first_non_empty(*values: str | None) -> str | None:
    for value in values:
        if value and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True)
class ProviderCompletion:
    text: str
    model_name: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, model_name: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.model_name = model_name


class ProviderUnavailableError(ProviderError):
    """Required endpoint or credential is not configured."""


class ProviderExecutionError(ProviderError):
    """The provider call itself failed (HTTP, network, malformed envelope)."""


@dataclass(frozen=True)
class TierProviderConfig:
    tier: str
    provider: str
    model: str
    base_url: str
    api_key: str | None

    def model_name(self) -> str:
        return f"{self.provider}:{self.model}"


def _tier_provider_config(tier: str) -> TierProviderConfig:
    tier_name = str(tier or "").strip().lower()
    if not tier_name:
        raise ProviderUnavailableError("Missing tier name", error_code="missing_tier")

    env_tier = tier_name.upper()
    provider = (
        _first_non_empty(
            os.environ.get(f"LOBBY_LLM_{env_tier}_PROVIDER"),
            os.environ.get("LOBBY_LLM_PROVIDER"),
        )
        or "openai_compatible"
    ).lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ProviderUnavailableError(
            f"Unsupported provider: {provider}",
            error_code="unsupported_provider",
        )

    model = _first_non_empty(
        os.environ.get(f"LOBBY_LLM_{env_tier}_MODEL"),
        os.environ.get("LOBBY_LLM_MODEL"),
        DEFAULT_MODEL_BY_TIER.get(tier_name),
    )
    if not model:
        raise ProviderUnavailableError(
            f"No model configured for tier: {tier_name}",
            error_code="missing_model",
        )

    base_url = _first_non_empty(
        os.environ.get(f"LOBBY_LLM_{env_tier}_BASE_URL"),
        os.environ.get("LOBBY_LLM_BASE_URL"),
    )
    if not base_url:
        base_url = DEFAULT_OPENAI_COMPATIBLE_BASE_URL

    api_key = _first_non_empty(
        os.environ.get(f"LOBBY_LLM_{env_tier}_API_KEY"),
        os.environ.get("LOBBY_LLM_API_KEY"),
        os.environ.get("OPENAI_API_KEY"),
    )
    if not api_key and not _truthy_env("LOBBY_LLM_ALLOW_EMPTY_API_KEY", False):
        raise ProviderUnavailableError(
            f"No API key configured for tier: {tier_name}",
            error_code="missing_api_key",
        )

    return TierProviderConfig(
        tier=tier_name,
        provider=provider,
        model=model,
        base_url=base_url.rstrip("/"),
        api_key=api_key,
    )


def configuration_error(tier: str) -> str | None:
    """Return the configuration error code for ``tier``, or None when usable."""
    try:
        _tier_provider_config(tier)
    except ProviderUnavailableError as exc:
        return exc.error_code
    return None


def _build_messages(prompt: str) -> list[dict[str, str]]:
    system = (
        "You evaluate moments in the lives of persistent characters. "
        "Answer with the JSON the user asks for, without markdown or commentary."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]


def _parse_content_text(message: Any) -> str:
    if isinstance(message, str):
        return message
    if isinstance(message, list):
        chunks: list[str] = []
        for item in message:
            if isinstance(item, dict):
                text = item.get("text")
                if text:
                    chunks.append(str(text))
        return "".join(chunks)
    return str(message or "")


def _post_openai_compatible(
    *,
    config: TierProviderConfig,
    prompt: str,
    temperature: float,
    max_output_tokens: int,
    timeout_ms: int,
) -> ProviderCompletion:
    payload = {
        "model": config.model,
        "messages": _build_messages(prompt),
        "temperature": float(temperature),
        "max_tokens": int(max_output_tokens),
    }
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    req = request.Request(
        f"{config.base_url}/chat/completions",
        method="POST",
        data=body,
        headers={"Content-Type": "application/json"},
    )
    if config.api_key:
        req.add_header("Authorization", f"Bearer {config.api_key}")

    timeout_s = max(0.2, float(timeout_ms) / 1000.0)
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except error.HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except Exception:
            detail = ""
        raise ProviderExecutionError(
            f"Provider HTTP error {exc.code}: {detail[:240]}",
            error_code=f"http_{exc.code}",
            model_name=config.model_name(),
        ) from exc
    except Exception as exc:
        raise ProviderExecutionError(
            f"Provider network error: {exc}",
            error_code="network_error",
            model_name=config.model_name(),
        ) from exc

    try:
        parsed = json.loads(raw)
    except Exception as exc:
        raise ProviderExecutionError(
            "Provider returned non-JSON response",
            error_code="invalid_provider_response",
            model_name=config.model_name(),
        ) from exc

    choices = parsed.get("choices") or []
    if not choices:
        raise ProviderExecutionError(
            "Provider response missing choices",
            error_code="missing_choices",
            model_name=config.model_name(),
        )
    first = choices[0] or {}
    content_text = _parse_content_text((first.get("message") or {}).get("content")).strip()

    usage = parsed.get("usage") or {}
    try:
        prompt_tokens = int(usage["prompt_tokens"])
    except Exception:
        prompt_tokens = estimate_token_count(prompt)
    try:
        completion_tokens = int(usage["completion_tokens"])
    except Exception:
        completion_tokens = estimate_token_count(content_text)

    return ProviderCompletion(
        text=content_text,
        model_name=str(parsed.get("model") or config.model_name()),
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )


def complete_prompt(
    *,
    tier: str,
    prompt: str,
    temperature: float,
    max_output_tokens: int,
    timeout_ms: int,
) -> ProviderCompletion:
    """Send one prompt to the provider configured for ``tier``."""
    config = _tier_provider_config(tier)
    return _post_openai_compatible(
        config=config,
        prompt=prompt,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout_ms=timeout_ms,
    )
