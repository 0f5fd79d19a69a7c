"""Chat-completions classifier client with retry and rate limiting."""

import json
import logging
import re
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Callable
from urllib.parse import urljoin

import requests

from asncat.models import (
    UNKNOWN,
    AsnMetadata,
    ClassificationResponse,
    Entity,
    FinalClassification,
)
from asncat.ratelimit import TokenRateLimiter
from asncat.taxonomy import CATEGORIES, PROMPT

logger = logging.getLogger(__name__)

COMPLETION_TOKENS = 256
EXTENDED_COMPLETION_TOKENS = 512
MAX_RETRIES = 5
INITIAL_RETRY_DELAY = 2.0
MAX_RETRY_DELAY = 30.0
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

_LABELLED_CATEGORY = re.compile(
    r"(?:^|\n)\s*-?\s*(?:Category|Classification):\s*(\w+)", re.IGNORECASE
)


class ClassificationError(Exception):
    """Raised when a classification cannot be obtained."""


class RequestLog:
    """Write one JSON file per ASN holding its request and response events.

    Args:
        directory: Where ``asn-<n>.json`` files are written.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._pending: dict[int, dict] = {}

    def log_request(self, metadata: AsnMetadata, summary: str, body: str) -> None:
        self._pending[metadata.asn] = {
            "timestamp": _now(),
            "event": "request",
            "asn": metadata.asn,
            "metadata": metadata.to_dict(),
            "summary": summary,
            "requestBody": body,
        }

    def log_response(
        self,
        metadata: AsnMetadata,
        status: int,
        body: str,
        classification: FinalClassification | None,
        approx_tokens: int,
    ) -> None:
        events = []
        request = self._pending.pop(metadata.asn, None)
        if request is not None:
            events.append(request)
        response = {
            "timestamp": _now(),
            "event": "response",
            "asn": metadata.asn,
            "status": status,
            "responseBody": body,
            "approxPromptTokens": approx_tokens,
        }
        if classification is not None:
            response["name"] = classification.name
            response["organization"] = classification.organization
            response["category"] = classification.category
        events.append(response)
        self._write(metadata.asn, events)

    def _write(self, asn: int, events: list[dict]) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self.directory / f"asn-{asn}.json"
            path.write_text(json.dumps(events, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write request log for AS%d: %s", asn, exc)


class OpenAIClassifier:
    """Classify ``AsnMetadata`` records through a chat-completions API.

    Args:
        api_key: Bearer token for the API.
        base_url: API base URL (``.../v1/``).
        model: Model name sent with each request.
        timeout: Per-request timeout in seconds.
        session: HTTP session; a new one is created when omitted.
        rate_limiter: Optional tokens-per-minute limiter consulted before
            each request.
        verbose: Log request and response bodies at INFO instead of DEBUG.
        request_log: Optional per-ASN request/response log.
        sleep: Sleep function used between retries (injectable for tests).
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = "https://api.openai.com/v1/",
        model: str = "gpt-5-nano",
        timeout: float = 30.0,
        session: requests.Session | None = None,
        rate_limiter: TokenRateLimiter | None = None,
        verbose: bool = False,
        request_log: RequestLog | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter
        self.verbose = verbose
        self.request_log = request_log
        self._sleep = sleep

    @property
    def endpoint(self) -> str:
        return urljoin(self.base_url, "chat/completions")

    def classify(self, metadata: AsnMetadata) -> FinalClassification:
        return self.classify_with_usage(metadata).classification

    def classify_with_usage(self, metadata: AsnMetadata) -> ClassificationResponse:
        """Classify *metadata* and report the approximate prompt tokens.

        Raises:
            ClassificationError: On a missing API key, a non-retryable HTTP
                status, exhausted retries, or an unparseable response.
        """
        return self._classify(metadata, COMPLETION_TOKENS, extended=False)

    def _classify(
        self, metadata: AsnMetadata, max_tokens: int, *, extended: bool
    ) -> ClassificationResponse:
        if not self.api_key or not self.api_key.strip():
            raise ClassificationError("OpenAI API key is missing")

        asn = metadata.asn
        summary = metadata_summary(metadata)
        body = build_request_body(self.model, summary, max_tokens)
        approx_tokens = round(len(body) / 4)
        self._trace("Request for AS%d: %s", asn, body)
        if self.request_log is not None:
            self.request_log.log_request(metadata, summary, body)

        if self.rate_limiter is not None:
            self.rate_limiter.wait_for_capacity(approx_tokens + max_tokens, f"AS{asn}")

        response = self._post_with_retries(metadata, body, approx_tokens)
        response_body = response.text
        self._trace("Response for AS%d (HTTP %d): %s", asn, response.status_code, response_body)

        if response.status_code >= 300:
            self._log_response(metadata, response, None, approx_tokens)
            raise ClassificationError(
                f"OpenAI classification failed: {response.status_code} {response_body}"
            )

        if self.rate_limiter is not None:
            self.rate_limiter.record_tokens(_used_tokens(response, approx_tokens + max_tokens))

        content, finish_reason = _extract_content(response_body)
        category = normalize_category(content)
        if finish_reason == "length" and category == UNKNOWN and not extended:
            logger.warning(
                "AS%d: Response truncated with no category found, retrying with %d tokens",
                asn,
                EXTENDED_COMPLETION_TOKENS,
            )
            return self._classify(metadata, EXTENDED_COMPLETION_TOKENS, extended=True)
        if finish_reason == "length" and category == UNKNOWN:
            raise ClassificationError(
                f"OpenAI response truncated and no category found in: {content[:100]}..."
            )

        classification = FinalClassification(
            asn=asn,
            name=_non_blank(metadata.name) or UNKNOWN,
            organization=metadata.entity_for_classification() or UNKNOWN,
            category=category,
        )
        self._trace(
            "Parsed AS%d: name=%s organization=%s category=%s",
            asn,
            classification.name,
            classification.organization,
            classification.category,
        )
        self._log_response(metadata, response, classification, approx_tokens)
        return ClassificationResponse(classification, approx_tokens)

    def _post_with_retries(
        self, metadata: AsnMetadata, body: str, approx_tokens: int
    ) -> requests.Response:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        last_error = "OpenAI request failed after retries"
        response: requests.Response | None = None
        for attempt in range(MAX_RETRIES + 1):
            hinted: float | None = None
            try:
                response = self.session.post(
                    self.endpoint,
                    data=body.encode("utf-8"),
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                response = None
                last_error = str(exc)
            else:
                if response.status_code not in RETRYABLE_STATUSES:
                    return response
                last_error = f"OpenAI returned {response.status_code}: {response.text}"
                hinted = retry_after_seconds(response)

            if attempt < MAX_RETRIES:
                delay = hinted if hinted is not None else retry_delay(attempt)
                logger.warning(
                    "AS%d: Retry %d/%d in %.1fs (%s)",
                    metadata.asn,
                    attempt + 1,
                    MAX_RETRIES,
                    delay,
                    last_error.splitlines()[0] if last_error else "",
                )
                self._sleep(delay)

        if response is not None:
            self._log_response(metadata, response, None, approx_tokens)
        raise ClassificationError(last_error)

    def _log_response(
        self,
        metadata: AsnMetadata,
        response: requests.Response,
        classification: FinalClassification | None,
        approx_tokens: int,
    ) -> None:
        if self.request_log is not None:
            self.request_log.log_response(
                metadata, response.status_code, response.text, classification, approx_tokens
            )

    def _trace(self, msg: str, *args: object) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)


# ---------------------------------------------------------------------------
# Request building and response parsing
# ---------------------------------------------------------------------------


def retry_delay(attempt: int) -> float:
    """Exponential backoff: 2s, 4s, 8s, ... capped at 30s."""
    return min(INITIAL_RETRY_DELAY * (2**attempt), MAX_RETRY_DELAY)


def retry_after_seconds(response: requests.Response) -> float | None:
    """Seconds requested by a ``Retry-After`` header, if any.

    Both delay-seconds and HTTP-date forms are understood; a date in the
    past yields 0.  The result never exceeds ``MAX_RETRY_DELAY``.
    """
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - datetime.now(UTC)).total_seconds()
    return min(max(0.0, seconds), MAX_RETRY_DELAY)


def build_request_body(model: str, summary: str, max_tokens: int) -> str:
    payload = {
        "model": model,
        "max_completion_tokens": max_tokens,
        "reasoning_effort": "minimal",
        "messages": [
            {"role": "system", "content": PROMPT},
            {"role": "user", "content": summary},
        ],
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def metadata_summary(metadata: AsnMetadata) -> str:
    """Render the ``Label: value`` lines sent as the user message.

    Values are de-duplicated case-insensitively across all labels.
    """
    seen: set[str] = set()
    lines: list[str] = []

    def add(label: str, value: str | None) -> None:
        if value is None or not value.strip():
            return
        key = value.strip().lower()
        if key in seen:
            return
        seen.add(key)
        lines.append(f"{label}: {value.strip()}")

    add("ASN", str(metadata.asn))
    add("Handle", metadata.handle)
    add("Name", metadata.name)
    add("Status", _join(metadata.statuses))
    add("Registered", _registration_year(metadata.registration_date))
    add("Registry", metadata.registry)
    add("Country", metadata.country)
    add("Kind", metadata.type)
    for entity in _entities(metadata):
        add("Organization", entity.organization)
        add("Entity", entity.name)
        add("Address", entity.address)
        add("Kind", entity.kind)
        add("Emails", _join(entity.emails))
        for remark in entity.remarks:
            add("Remark", remark)
    for remark in metadata.remarks:
        add("Remark", remark)
    return "\n".join(lines)


def normalize_category(content: str | None) -> str:
    """Pull a taxonomy category out of a free-form model answer.

    Tried in order: the whole answer, a JSON ``category`` field, a
    ``Category:``/``Classification:`` line, a ``- <Category>:`` list line,
    and the first category named as a whole word in the first 100
    characters.  Falls back to ``Unknown``.
    """
    text = (content or "").strip()
    if text in CATEGORIES:
        return text

    try:
        node = json.loads(text)
    except ValueError:
        node = None
    if isinstance(node, dict) and node.get("category") in CATEGORIES:
        return node["category"]

    match = _LABELLED_CATEGORY.search(text)
    if match:
        for category in CATEGORIES:
            if category.lower() == match.group(1).lower():
                return category

    for category in CATEGORIES:
        pattern = rf"(?:^|\n)\s*-\s*{re.escape(category)}\s*:"
        if re.search(pattern, text, re.IGNORECASE):
            return category

    prefix = text[:100]
    for category in CATEGORIES:
        if re.search(rf"\b{re.escape(category)}\b", prefix, re.IGNORECASE):
            return category
    return UNKNOWN


def _extract_content(body: str) -> tuple[str, str]:
    try:
        root = json.loads(body)
        choice = root["choices"][0]
        content = (choice.get("message") or {}).get("content") or ""
        finish_reason = choice.get("finish_reason") or ""
    except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
        raise ClassificationError(f"Failed to parse OpenAI response: {exc}") from exc
    if not content.strip():
        raise ClassificationError(
            f"Empty OpenAI response (finish_reason: {finish_reason})"
        )
    return content, finish_reason


def _used_tokens(response: requests.Response, fallback: int) -> int:
    try:
        total = response.json()["usage"]["total_tokens"]
    except (ValueError, KeyError, TypeError):
        return fallback
    return total if isinstance(total, int) and total > 0 else fallback


def _entities(metadata: AsnMetadata) -> list[Entity]:
    entities = [metadata.registrant] if metadata.registrant else []
    entities.extend(metadata.contacts)
    return entities


def _join(values: list[str]) -> str | None:
    if not values:
        return None
    return ", ".join(values)


def _registration_year(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value[:4]


def _non_blank(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


def _now() -> str:
    return datetime.now(UTC).isoformat()
