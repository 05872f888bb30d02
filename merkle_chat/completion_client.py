"""
Completion service client for chat functionality.
"""
import asyncio
import logging
from typing import Any, Optional, Sequence

import httpx

from merkle_chat.config import Settings
from merkle_chat.errors import CompletionError, ErrorCategory
from merkle_chat.models import Message, Sender
from merkle_chat.offline_responder import OfflineResponder
from merkle_chat.prompts import Classifier, build_system_prompt, classify_query
from merkle_chat.retry import RetryHook, RetryingExecutor

logger = logging.getLogger(__name__)

HEALTH_CHECK_MESSAGE = "Hello"


def category_for_status(status_code: int) -> ErrorCategory:
    """Map a non-2xx HTTP status to an error category."""
    if status_code in (401, 403):
        return ErrorCategory.AUTH_ERROR
    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if status_code >= 500:
        return ErrorCategory.SERVICE_UNAVAILABLE
    return ErrorCategory.REQUEST_ERROR


def _error_for_response(response: httpx.Response) -> CompletionError:
    status = response.status_code
    category = category_for_status(status)

    detail = None
    try:
        detail = response.json().get("error", {}).get("message")
    except (ValueError, AttributeError):
        pass

    if status == 403:
        message = "Access denied. Please check your API key permissions."
    elif category == ErrorCategory.REQUEST_ERROR:
        message = detail or f"HTTP {status}: {response.reason_phrase}"
    else:
        # remaining categories use their default text
        message = None
    return CompletionError(category, message, status_code=status)


def parse_completion(data: Any) -> str:
    """Extract the first choice's content or raise MalformedResponse."""
    try:
        choices = data["choices"]
        content = choices[0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise CompletionError(
            ErrorCategory.MALFORMED_RESPONSE,
            "No response choices received from the completion service.",
        )
    if not isinstance(content, str) or not content.strip():
        raise CompletionError(ErrorCategory.MALFORMED_RESPONSE)
    return content.strip()


class CompletionClient:
    """Wrapper for the chat completions endpoint.

    Use as an async context manager so the underlying httpx client is
    opened once and closed on shutdown. In offline mode no HTTP client is
    created and every call is answered by the OfflineResponder.
    """

    def __init__(
        self,
        settings: Settings,
        executor: Optional[RetryingExecutor] = None,
        offline: Optional[OfflineResponder] = None,
        classifier: Classifier = classify_query,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.executor = executor or RetryingExecutor()
        self.offline = offline or OfflineResponder(
            delay_ms=settings.offline_delay_ms, classifier=classifier
        )
        self._classify = classifier
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        # one request in flight per client, probes included
        self._in_flight = asyncio.Lock()

    @property
    def offline_mode(self) -> bool:
        return self.settings.offline_mode

    async def connect(self):
        """Open the HTTP client. Called implicitly by send() if needed."""
        if self.offline_mode or self._http is not None:
            return
        self._http = httpx.AsyncClient(
            base_url=self.settings.api_url.rstrip("/"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.settings.api_key}",
            },
            timeout=httpx.Timeout(self.settings.timeout_ms / 1000),
            transport=self._transport,
        )

    async def disconnect(self):
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    def build_messages(self, message: str, history: Sequence[Message] = ()) -> list[dict[str, str]]:
        """System prompt, the last `history_limit` settled messages, then `message`."""
        kind = self._classify(message)
        payload = [
            {
                "role": "system",
                "content": build_system_prompt(kind, self.settings.project_context),
            }
        ]

        limit = self.settings.history_limit
        settled = [m for m in history if not m.is_provisional]
        recent = settled[-limit:] if limit > 0 else []
        for item in recent:
            role = "user" if item.sender == Sender.USER else "assistant"
            payload.append({"role": role, "content": item.text})

        payload.append({"role": "user", "content": message})
        return payload

    def build_request(self, message: str, history: Sequence[Message] = ()) -> dict[str, Any]:
        return {
            "model": self.settings.model,
            "messages": self.build_messages(message, history),
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
            "top_p": self.settings.top_p,
            "stream": False,
        }

    async def _post_once(self, body: dict[str, Any]) -> str:
        try:
            response = await self._http.post("/chat/completions", json=body)
        except httpx.TimeoutException:
            raise CompletionError(ErrorCategory.TIMEOUT)
        except httpx.TransportError as e:
            logger.warning("Transport error talking to completion service: %s", type(e).__name__)
            raise CompletionError(ErrorCategory.SERVICE_UNAVAILABLE)

        if response.is_error:
            raise _error_for_response(response)

        try:
            data = response.json()
        except ValueError:
            raise CompletionError(ErrorCategory.MALFORMED_RESPONSE)
        return parse_completion(data)

    async def send(
        self,
        message: str,
        history: Sequence[Message] = (),
        on_retry: Optional[RetryHook] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """Send one user message and return the assistant's reply text.

        Raises CompletionError once the retry budget is spent or on the
        first non-retryable failure. Concurrent callers are served one at
        a time.
        """
        async with self._in_flight:
            return await self._send(message, history, on_retry, max_retries)

    async def _send(self, message, history, on_retry, max_retries) -> str:
        if self.offline_mode:
            logger.info("Using offline responder")
            return await self.offline.respond(message)

        await self.connect()
        body = self.build_request(message, history)
        retries = self.settings.max_retries if max_retries is None else max_retries
        logger.info(
            "Sending completion request: model=%s history=%d",
            self.settings.model, len(body["messages"]) - 2,
        )
        return await self.executor.run(
            lambda: self._post_once(body),
            max_retries=retries,
            per_attempt_timeout_ms=self.settings.timeout_ms,
            on_retry=on_retry,
        )

    async def health_check(self) -> bool:
        """Probe the service with a single trivial request, no retries."""
        if self.offline_mode:
            return True
        try:
            await self.send(HEALTH_CHECK_MESSAGE, max_retries=0)
        except CompletionError as e:
            logger.warning("Health check failed: %s", e.category.value)
            return False
        return True
