from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Sequence

import httpx

from core.cancel import CancellationToken

logger = logging.getLogger(__name__)

CHAT_TIMEOUT = 300.0
HEALTH_TIMEOUT = 5.0
LIST_TIMEOUT = 10.0

CHAT_PATH = "/v1/chat/completions"
MODELS_PATH = "/v1/models"

_FINAL_CHANNEL_RE = re.compile(
    r"<\|channel\|>\s*final\s*<\|message\|>(.*?)(?:<\|return\|>|<\|end\|>|$)",
    re.DOTALL,
)
_MARKER_RE = re.compile(r"<\|(?:start|channel|message|return|end|constrain|call)\|>")
_CHANNEL_NAME_RE = re.compile(r"<\|channel\|>\s*(?:analysis|commentary|final)\s*(?=<\|message\|>)")

ERROR_TIMEOUT = "timeout"
ERROR_CONNECTION = "connection"
ERROR_INTERRUPTED = "interrupted"
ERROR_HTTP = "http"
ERROR_CANCELLED = "cancelled"
ERROR_PROTOCOL = "protocol"

ERROR_MESSAGES = {
    ERROR_TIMEOUT: "The request timed out. The model may still be loading or the reply is very long.",
    ERROR_CONNECTION: "Could not connect to the Foundry service. Is it running?",
    ERROR_INTERRUPTED: "The connection was interrupted while the reply was being received.",
    ERROR_CANCELLED: "Request cancelled.",
    ERROR_PROTOCOL: "The service returned a response that could not be read.",
}


@dataclass(frozen=True)
class ChatResult:
    ok: bool
    text: str
    error_kind: str | None = None
    model: str | None = None
    status_code: int | None = None

    def __bool__(self) -> bool:
        return self.ok


class RequestCancelled(Exception):
    """The token fired before the service answered."""


def _interruptible(call: Callable[[], httpx.Response], token: CancellationToken | None) -> httpx.Response:
    """
    Run a blocking httpx call on a helper thread and stop waiting for it as
    soon as `token` fires. An abandoned call finishes or fails on its own thread.
    """
    if token is None:
        return call()
    outcome: dict = {}
    settled = threading.Event()

    def target() -> None:
        try:
            outcome["response"] = call()
        except Exception as exc:
            outcome["error"] = exc
        finally:
            settled.set()

    unregister = token.on_cancel(settled.set)
    try:
        worker = threading.Thread(target=target, name="ChatRelayRequest", daemon=True)
        worker.start()
        settled.wait()
    finally:
        unregister()
    if token.cancelled and "response" not in outcome:
        raise RequestCancelled()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["response"]


def sanitize_content(text: str | None) -> str:
    """Keep only the `final` channel body of channel-delimited replies."""
    if not text:
        return ""
    match = _FINAL_CHANNEL_RE.search(text)
    if match:
        return match.group(1).strip()
    if _MARKER_RE.search(text):
        stripped = _CHANNEL_NAME_RE.sub("", text)
        return _MARKER_RE.sub("", stripped).strip()
    return text.strip()


def extract_reply(payload) -> str | None:
    """choices[0].message.content, else choices[0].delta.content."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    first = choices[0]
    for key in ("message", "delta"):
        part = first.get(key)
        if isinstance(part, dict) and isinstance(part.get("content"), str):
            return part["content"]
    return None


class ChatRelay:
    """
    OpenAI-compatible client for the local Foundry service.

    Each request owns a fresh httpx.Client so cancellation can close exactly
    that connection. Failures come back as ChatResult values, never raised.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str = "",
        max_tokens: int = 2048,
        chat_timeout: float = CHAT_TIMEOUT,
        health_timeout: float = HEALTH_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url: str | None = None
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.chat_timeout = chat_timeout
        self.health_timeout = health_timeout
        self._transport = transport
        self._resolver: Callable[[str, CancellationToken | None], str | None] | None = None
        self._lock = threading.Lock()
        self.set_base_url(base_url)

    def set_base_url(self, url: str | None) -> None:
        cleaned = (url or "").strip().rstrip("/")
        with self._lock:
            self.base_url = cleaned or None
        if cleaned:
            logger.info("chat relay base url: %s", cleaned)

    def bind_resolver(self, resolver: Callable[[str, CancellationToken | None], str | None]) -> None:
        self._resolver = resolver

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self, timeout: float) -> httpx.Client:
        kwargs = {"timeout": timeout, "headers": self._headers()}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def health_ok(self, timeout: float | None = None, token: CancellationToken | None = None) -> bool:
        """Single GET on the models endpoint; any failure is False."""
        base = self.base_url
        if not base:
            return False
        client = self._client(timeout if timeout is not None else self.health_timeout)
        unregister = token.on_cancel(client.close) if token is not None else (lambda: None)
        try:
            response = _interruptible(lambda: client.get(base + MODELS_PATH), token)
            ok = response.is_success
            logger.info("health probe %s -> %s", base + MODELS_PATH, response.status_code)
            return ok
        except RequestCancelled:
            logger.info("health check cancelled")
            return False
        except (httpx.HTTPError, RuntimeError) as exc:
            logger.warning("health probe failed: %s", exc)
            return False
        finally:
            unregister()
            client.close()

    def list_models(self, token: CancellationToken | None = None) -> list[str]:
        base = self.base_url
        if not base:
            return []
        client = self._client(LIST_TIMEOUT)
        unregister = token.on_cancel(client.close) if token is not None else (lambda: None)
        try:
            response = _interruptible(lambda: client.get(base + MODELS_PATH), token)
            if not response.is_success:
                return []
            data = response.json().get("data")
        except RequestCancelled:
            return []
        except (httpx.HTTPError, RuntimeError, ValueError, AttributeError) as exc:
            logger.warning("model listing failed: %s", exc)
            return []
        finally:
            unregister()
            client.close()
        if not isinstance(data, list):
            return []
        return [item["id"] for item in data if isinstance(item, dict) and isinstance(item.get("id"), str) and item["id"]]

    def resolve_model(self, alias: str, token: CancellationToken | None = None) -> str:
        if self._resolver is None:
            return alias
        try:
            runtime_id = self._resolver(alias, token)
        except Exception:
            logger.exception("runtime id lookup failed for %s", alias)
            return alias
        return runtime_id or alias

    def send_chat(
        self,
        alias: str,
        messages: Sequence[dict],
        temperature: float = 0.7,
        token: CancellationToken | None = None,
    ) -> ChatResult:
        if token is not None and token.cancelled:
            return self._failure(ERROR_CANCELLED)
        base = self.base_url
        if not base:
            return ChatResult(False, "The Foundry service URL is not known yet.", ERROR_CONNECTION)

        model = self.resolve_model(alias, token)
        body = {
            "model": model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "temperature": temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }
        logger.info("chat -> %s model=%s messages=%d", base + CHAT_PATH, model, len(body["messages"]))

        client = self._client(self.chat_timeout)
        unregister = token.on_cancel(client.close) if token is not None else (lambda: None)
        try:
            response = _interruptible(lambda: client.post(base + CHAT_PATH, json=body), token)
            response.raise_for_status()
            payload = response.json()
        except RequestCancelled:
            logger.info("chat cancelled while waiting for %s", model)
            return self._failure(ERROR_CANCELLED, model)
        except httpx.TimeoutException as exc:
            return self._classified(ERROR_TIMEOUT, exc, token, model)
        except httpx.ConnectError as exc:
            return self._classified(ERROR_CONNECTION, exc, token, model)
        except (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError, httpx.CloseError) as exc:
            return self._classified(ERROR_INTERRUPTED, exc, token, model)
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text.strip()[:300]
            code = exc.response.status_code
            logger.warning("chat http %s: %s", code, detail)
            return ChatResult(False, f"The service returned HTTP {code}. {detail}".strip(), ERROR_HTTP, model, code)
        except (httpx.HTTPError, RuntimeError) as exc:
            return self._classified(ERROR_CONNECTION, exc, token, model)
        except (json.JSONDecodeError, ValueError) as exc:
            return self._classified(ERROR_PROTOCOL, exc, token, model)
        finally:
            unregister()
            client.close()

        if token is not None and token.cancelled:
            return self._failure(ERROR_CANCELLED, model)
        content = extract_reply(payload)
        if content is None:
            logger.warning("chat reply without content: %s", str(payload)[:300])
            return self._failure(ERROR_PROTOCOL, model)
        return ChatResult(True, sanitize_content(content), None, model, response.status_code)

    def _classified(
        self,
        kind: str,
        exc: Exception,
        token: CancellationToken | None,
        model: str | None,
    ) -> ChatResult:
        if token is not None and token.cancelled:
            kind = ERROR_CANCELLED
        logger.warning("chat failed (%s): %s", kind, exc)
        return self._failure(kind, model)

    @staticmethod
    def _failure(kind: str, model: str | None = None) -> ChatResult:
        return ChatResult(False, ERROR_MESSAGES[kind], kind, model)
