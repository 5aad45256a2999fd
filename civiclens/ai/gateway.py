"""
CivicLens
Oracle Gateway — single entry point for every vision/text model call.

Provider-agnostic router with:
    - Multi-provider support (Gemini, Anthropic Claude, OpenAI, local stub)
    - Inline images (0–2 per call) next to one text prompt
    - Bounded per-call timeout, auto-retry with exponential backoff
    - Call logging (oracle_call_logs)

Every failure surfaces as ``OracleError`` (``OracleUnavailable`` when no
provider is configured).  Callers decide whether that fails open or closed.

Usage:
    from civiclens.ai.gateway import OracleImage, get_oracle_gateway
    reply = get_oracle_gateway().ask(
        prompt, [OracleImage(data, "image/jpeg")],
        purpose="duplicate_check", temperature=0.1,
    )
"""

import base64
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from civiclens.core.exceptions import OracleError, OracleUnavailable
from civiclens.models import db
from civiclens.models.ai import OracleCallLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OracleImage:
    data: bytes
    mime_type: str = "image/jpeg"

    @property
    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


# ── Provider Abstract Base ────────────────────────────────────────────────────

class OracleProvider(ABC):
    """Abstract interface for oracle providers."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        images: list[OracleImage],
        model: str,
        *,
        temperature: float,
        timeout: float,
        json_response: bool = False,
    ) -> str:
        """
        Send one prompt plus inline images, return the reply text.

        Raises any exception on transport or provider failure; the gateway
        wraps it into ``OracleError``.
        """
        ...


# ── Google Gemini Provider (default) ─────────────────────────────────────────

class GeminiProvider(OracleProvider):
    """
    Google Gemini API provider.

    Models:
        - gemini-2.5-flash  (default: triage, duplicate + repair checks)
        - gemini-2.5-pro

    Environment:
        GEMINI_API_KEY
    """

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate(self, prompt, images, model="gemini-2.5-flash", *,
                 temperature, timeout, json_response=False) -> str:
        client = self._get_client()
        from google.genai import types

        parts = [types.Part.from_bytes(data=img.data, mime_type=img.mime_type) for img in images]
        parts.append(types.Part(text=prompt))

        config = types.GenerateContentConfig(
            temperature=temperature,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),  # milliseconds
        )
        if json_response:
            config.response_mime_type = "application/json"

        response = client.models.generate_content(
            model=model,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
        return response.text or ""


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(OracleProvider):
    """Claude API (Anthropic) provider."""

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            # Retries are owned by the gateway
            self._client = anthropic.Anthropic(api_key=self.api_key, max_retries=0)
        return self._client

    def generate(self, prompt, images, model="claude-sonnet-4-5", *,
                 temperature, timeout, json_response=False) -> str:
        client = self._get_client()
        content = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": img.mime_type, "data": img.b64},
            }
            for img in images
        ]
        if json_response:
            prompt = f"{prompt}\n\nRespond with the JSON object only."
        content.append({"type": "text", "text": prompt})

        response = client.messages.create(
            model=model,
            max_tokens=1024,
            temperature=temperature,
            messages=[{"role": "user", "content": content}],
            timeout=timeout,
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(OracleProvider):
    """OpenAI GPT vision provider."""

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai
            self._client = openai.OpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    def generate(self, prompt, images, model="gpt-4o-mini", *,
                 temperature, timeout, json_response=False) -> str:
        client = self._get_client()
        content = [{"type": "text", "text": prompt}]
        content.extend(
            {"type": "image_url", "image_url": {"url": f"data:{img.mime_type};base64,{img.b64}"}}
            for img in images
        )
        params = {
            "model": model,
            "messages": [{"role": "user", "content": content}],
            "temperature": temperature,
            "timeout": timeout,
        }
        if json_response:
            params["response_format"] = {"type": "json_object"}
        response = client.chat.completions.create(**params)
        return response.choices[0].message.content or ""


# ── Local Stub Provider (for dev without API keys) ───────────────────────────

class LocalStubProvider(OracleProvider):
    """
    Deterministic stand-in used only when AI_ORACLE_ALLOW_STUB is on.

    Conservative by construction: never confirms a duplicate or a repair,
    and triages every report as a medium-severity candidate for review.
    """

    def generate(self, prompt, images, model="local-stub", *,
                 temperature, timeout, json_response=False) -> str:
        if json_response:
            return json.dumps({
                "verified": bool(images),
                "confidence_score": 50 if images else 0,
                "summary": "Local stub analysis; manual review recommended.",
                "severity": "medium",
            })
        return "NO"


# ── Oracle Gateway (Main Interface) ──────────────────────────────────────────

class OracleGateway:
    """
    Central gateway for all oracle calls.

    Features:
        - Provider routing based on model name
        - Per-call timeout and retry with exponential backoff
        - Call logging (persisted to DB inside a savepoint)
    """

    # Model prefix → provider mapping
    PROVIDER_PREFIXES = (
        ("gemini-", "gemini"),
        ("claude-", "anthropic"),
        ("gpt-", "openai"),
        ("o4-", "openai"),
        ("local-stub", "local"),
    )

    def __init__(
        self,
        *,
        model: str = "gemini-2.5-flash",
        timeout: float = 20.0,
        max_retries: int = 1,
        allow_stub: bool = False,
        providers: dict[str, OracleProvider] | None = None,
    ):
        self.model = model
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.allow_stub = allow_stub
        self._providers: dict[str, OracleProvider] = {}
        if providers is None:
            self._init_providers()
        else:
            self._providers.update(providers)

    @classmethod
    def from_config(cls, cfg) -> "OracleGateway":
        return cls(
            model=cfg.get("AI_ORACLE_MODEL", "gemini-2.5-flash"),
            timeout=cfg.get("AI_ORACLE_TIMEOUT", 20.0),
            max_retries=cfg.get("AI_ORACLE_MAX_RETRIES", 1),
            allow_stub=cfg.get("AI_ORACLE_ALLOW_STUB", False),
        )

    def _init_providers(self):
        """Register real providers whose API keys are present."""
        if os.getenv("GEMINI_API_KEY"):
            self._providers["gemini"] = GeminiProvider()
        if os.getenv("ANTHROPIC_API_KEY"):
            self._providers["anthropic"] = AnthropicProvider()
        if os.getenv("OPENAI_API_KEY"):
            self._providers["openai"] = OpenAIProvider()
        if self.allow_stub:
            self._providers["local"] = LocalStubProvider()

    def register_provider(self, name: str, provider: OracleProvider) -> None:
        self._providers[name] = provider

    @property
    def available_providers(self) -> list[str]:
        return sorted(self._providers)

    def provider_name_for(self, model: str) -> str:
        for prefix, name in self.PROVIDER_PREFIXES:
            if model.startswith(prefix):
                return name
        return "gemini"

    def _get_provider(self, model: str) -> tuple[OracleProvider, str]:
        """
        Resolve model to provider.  Falls back to the local stub only when
        it is explicitly allowed; otherwise raises OracleUnavailable.
        """
        provider_name = self.provider_name_for(model)
        if provider_name in self._providers:
            return self._providers[provider_name], provider_name

        if self.allow_stub and "local" in self._providers:
            logger.warning(
                "Provider '%s' not available (no API key?). Using local stub for model '%s'.",
                provider_name, model,
            )
            return self._providers["local"], "local"

        raise OracleUnavailable(f"No oracle provider configured for model '{model}'")

    def ask(
        self,
        prompt: str,
        images: list[OracleImage] | tuple = (),
        *,
        purpose: str = "",
        temperature: float = 0.1,
        json_response: bool = False,
        model: str | None = None,
    ) -> str:
        """
        Send one prompt with up to two images; return the raw reply text.

        Raises:
            OracleUnavailable: no provider configured for the model.
            OracleError: every attempt failed (transport, timeout, provider error).
        """
        model = model or self.model
        images = list(images)
        if len(images) > 2:
            raise ValueError("The oracle accepts at most two images per call")

        try:
            provider, provider_name = self._get_provider(model)
        except OracleUnavailable:
            logger.warning("Oracle unavailable for purpose=%s model=%s", purpose, model,
                           extra={"purpose": purpose})
            raise

        last_error = None
        started = time.time()
        for attempt in range(1, self.max_retries + 1):
            try:
                text = provider.generate(
                    prompt, images, model,
                    temperature=temperature,
                    timeout=self.timeout,
                    json_response=json_response,
                )
                latency_ms = int((time.time() - started) * 1000)
                self._log_call(
                    provider=provider_name, model=model, purpose=purpose,
                    image_count=len(images), latency_ms=latency_ms,
                    attempts=attempt, success=True,
                )
                return text or ""
            except Exception as e:
                last_error = e
                logger.warning("Oracle call attempt %d/%d failed (%s): %s",
                               attempt, self.max_retries, purpose, e,
                               extra={"purpose": purpose, "provider": provider_name})
                if attempt < self.max_retries:
                    backoff = min(2 ** (attempt - 1), 4)
                    threading.Event().wait(backoff)

        latency_ms = int((time.time() - started) * 1000)
        self._log_call(
            provider=provider_name, model=model, purpose=purpose,
            image_count=len(images), latency_ms=latency_ms,
            attempts=self.max_retries, success=False, error_message=str(last_error),
        )
        raise OracleError(
            f"Oracle call failed after {self.max_retries} attempt(s): {last_error}"
        ) from last_error

    # ── Internal Logging ──────────────────────────────────────────────────

    @staticmethod
    def _log_call(*, provider, model, purpose, image_count, latency_ms,
                  attempts, success, error_message=None):
        """Persist a call log inside a savepoint so the caller's transaction is untouched."""
        try:
            with db.session.begin_nested():
                db.session.add(OracleCallLog(
                    provider=provider, model=model, purpose=purpose,
                    image_count=image_count, latency_ms=latency_ms,
                    attempts=attempts, success=success,
                    error_message=(error_message or None) and error_message[:2000],
                ))
        except SQLAlchemyError as e:
            logger.error("Failed to log oracle call: %s", e)


# ── App wiring ───────────────────────────────────────────────────────────────

def init_oracle_gateway(app, gateway: OracleGateway | None = None) -> OracleGateway:
    gateway = gateway or OracleGateway.from_config(app.config)
    app.extensions["civiclens.oracle"] = gateway
    return gateway


def get_oracle_gateway() -> OracleGateway:
    return current_app.extensions["civiclens.oracle"]
