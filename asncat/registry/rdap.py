"""Per-ASN RDAP lookups, used when the registry cache has no record."""

import logging
import re
import time
from datetime import UTC, datetime
from typing import Callable
from urllib.parse import urljoin

import requests

from asncat.models import AsnMetadata, Entity
from asncat.registry import MetadataSource

logger = logging.getLogger(__name__)

DEFAULT_RDAP_URL = "https://rdap.org/"
MAX_ATTEMPTS = 3
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504, 522, 524, 599})
REMARK_MAX_CHARS = 420
TOP_LEVEL_REMARKS = 2
ENTITY_REMARKS = 3

_WHITESPACE = re.compile(r"\s+")


class RdapClient(MetadataSource):
    """Look up ``autnum/<asn>`` on an RDAP server, with one fallback server.

    Misses (404, exhausted retries, unparseable bodies) return ``None``;
    they are not transient from the caller's point of view.

    Args:
        base_url: Primary RDAP base URL.
        fallback_url: Server tried when the primary has no answer; skipped
            when equal to *base_url*.
        timeout: Per-request timeout in seconds.
        session: HTTP session; a new one is created when omitted.
        sleep: Sleep function used between attempts (injectable for tests).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_RDAP_URL,
        *,
        fallback_url: str = DEFAULT_RDAP_URL,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = _with_slash(base_url)
        self.fallback_url = _with_slash(fallback_url)
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    def lookup(self, asn: int) -> AsnMetadata | None:
        found = self._try_lookup(self.base_url, asn)
        if found is None and self.fallback_url != self.base_url:
            found = self._try_lookup(self.fallback_url, asn)
        return found

    def _try_lookup(self, base: str, asn: int) -> AsnMetadata | None:
        url = urljoin(base, f"autnum/{asn}")
        headers = {"Accept": "application/rdap+json, application/json"}
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = self.session.get(url, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                logger.warning(
                    "RDAP %s failed on attempt %d/%d: %s", url, attempt, MAX_ATTEMPTS, exc
                )
                if attempt == MAX_ATTEMPTS:
                    return None
                self._pause(attempt)
                continue

            status = response.status_code
            if 200 <= status < 300:
                try:
                    return parse_autnum_response(asn, response.json())
                except ValueError as exc:
                    logger.warning("RDAP %s returned an unreadable body: %s", url, exc)
                    return None
            if not _should_retry(status, attempt):
                logger.warning("RDAP %s returned status %d", url, status)
                return None
            self._pause(attempt)
        return None

    def _pause(self, attempt: int) -> None:
        self._sleep(min(1.0, 0.2 * attempt))


def parse_autnum_response(asn: int, root: dict) -> AsnMetadata:
    """Build ``AsnMetadata`` from a decoded RDAP ``autnum`` object."""
    if not isinstance(root, dict):
        raise ValueError("RDAP response is not an object")
    entities = [_parse_entity(e) for e in root.get("entities") or [] if isinstance(e, dict)]
    registrant = _pick_registrant(entities)
    contacts = [e for e in entities if e is not registrant]
    events = root.get("events") or []
    return AsnMetadata(
        asn=asn,
        handle=_text(root.get("handle")),
        start_autnum=_int(root.get("startAutnum"), asn),
        end_autnum=_int(root.get("endAutnum"), asn),
        name=_text(root.get("name")),
        country=_text(root.get("country")),
        registry=_text(root.get("port43")),
        type=_text(root.get("type")),
        statuses=_string_list(root.get("status")),
        registration_date=_event_date(events, "registration"),
        last_changed_date=_event_date(events, "last changed"),
        registrant=registrant,
        contacts=contacts,
        remarks=_collect_remarks(root.get("remarks"), TOP_LEVEL_REMARKS),
        fetched_at=datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_entity(node: dict) -> Entity:
    entity = Entity(
        handle=_text(node.get("handle")),
        roles=_string_list(node.get("roles")),
        statuses=_string_list(node.get("status")),
        remarks=_collect_remarks(node.get("remarks"), ENTITY_REMARKS),
    )
    vcard = node.get("vcardArray")
    if not isinstance(vcard, list) or len(vcard) < 2 or not isinstance(vcard[1], list):
        return entity

    for entry in vcard[1]:
        if not isinstance(entry, list) or len(entry) < 4:
            continue
        label = entry[0]
        value = entry[3] if isinstance(entry[3], str) else None
        if label == "fn":
            entity.name = value
        elif label == "org":
            entity.organization = value
        elif label == "kind":
            entity.kind = value
        elif label == "email" and value and value.strip():
            entity.emails.append(value)
        elif label == "tel" and value and value.strip():
            entity.phones.append(value)
        elif label == "adr" and isinstance(entry[1], dict):
            address = entry[1].get("label")
            if isinstance(address, str) and address.strip():
                entity.address = address.replace("\n", ", ")
    return entity


def _pick_registrant(entities: list[Entity]) -> Entity | None:
    for entity in entities:
        roles = {role.lower() for role in entity.roles}
        if "registrant" in roles or "registrar" in roles:
            return entity
    return entities[0] if entities else None


def _event_date(events: list, action: str) -> str | None:
    for event in events:
        if not isinstance(event, dict):
            continue
        if str(event.get("eventAction", "")).lower() != action:
            continue
        raw = _text(event.get("eventDate"))
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw).isoformat()
        except ValueError:
            return raw
    return None


def _collect_remarks(remarks: object, limit: int) -> list[str]:
    if not isinstance(remarks, list):
        return []
    cleaned: list[str] = []
    for remark in remarks:
        if len(cleaned) >= limit:
            break
        description = remark.get("description") if isinstance(remark, dict) else None
        if not isinstance(description, list):
            continue
        parts = [line.strip() for line in description if isinstance(line, str) and line.strip()]
        if parts:
            cleaned.append(_truncate(" ".join(parts), REMARK_MAX_CHARS))
    return cleaned


def _truncate(value: str, max_chars: int) -> str:
    normalized = _WHITESPACE.sub(" ", value).strip()
    if len(normalized) <= max_chars:
        return normalized
    return normalized[:max_chars] + "..."


def _should_retry(status: int, attempt: int) -> bool:
    return attempt < MAX_ATTEMPTS and (status >= 500 or status in RETRYABLE_STATUSES)


def _string_list(node: object) -> list[str]:
    if not isinstance(node, list):
        return []
    return [str(v) for v in node if v is not None and str(v).strip()]


def _text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _int(value: object, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _with_slash(url: str) -> str:
    return url if url.endswith("/") else url + "/"
