"""ARIN bulk-whois XML parser (three streaming passes plus a contact re-scan).

The orgs and POC files are far larger than the subset referenced by ASN
records, so the parse is driven by what the previous pass referenced:

1. ASNs file: ASN ranges, names and org handles.
2. Orgs file: only orgs referenced in pass 1; collects their POC handles.
3. POCs file: only POCs referenced in pass 2; collects email addresses.

An auxiliary re-scan of the orgs file maps each kept org to its POC
handles, and the email domains are attached to the orgs at the end.

Every pass reads the file forward-only through ``lxml.etree.iterparse``
and clears elements as soon as a record is complete, so memory stays
bounded by the referenced subset rather than by file size.
"""

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import BinaryIO, Iterator

from lxml import etree

from asncat.models import ArinBulkData, ArinOrg
from asncat.registry import RegistryParseError

logger = logging.getLogger(__name__)

# Ranges wider than this are recorded at their start ASN only.
RANGE_EXPANSION_LIMIT = 1000

# Org handle of the IANA reserved pool; such ranges are not allocations.
RESERVED_ORG_HANDLE = "IANA"

XmlSource = Path | str | BinaryIO


class ParserState(enum.Enum):
    """Where the record reader currently is in the document."""

    IDLE = "idle"
    IN_ASN = "in_asn"
    IN_ORG = "in_org"
    IN_POC = "in_poc"


_STATE_FOR_TAG: dict[str, ParserState] = {
    "asn": ParserState.IN_ASN,
    "org": ParserState.IN_ORG,
    "poc": ParserState.IN_POC,
}


@dataclass
class BulkRecord:
    """Flattened view of one ``<asn>``, ``<org>`` or ``<poc>`` element.

    Attributes:
        kind: Record tag ("asn", "org" or "poc").
        fields: Text of direct child elements, keyed by local name.
        poc_handles: ``handle`` attributes of ``pocLinkRef`` descendants.
        emails: Text of ``email`` descendants.
        street_lines: Text of ``streetAddress/line`` descendants.
    """

    kind: str
    fields: dict[str, str] = field(default_factory=dict)
    poc_handles: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    street_lines: list[str] = field(default_factory=list)


class RecordReader:
    """Turn start/end element events into ``BulkRecord`` objects.

    The reader knows nothing about files: it is fed ``start`` and ``end``
    events with local tag names, attributes and element text, which keeps
    it testable without building XML documents.

    Args:
        record_tag: Local name of the record element ("asn", "org", "poc").
    """

    def __init__(self, record_tag: str) -> None:
        if record_tag not in _STATE_FOR_TAG:
            raise ValueError(f"Unsupported record tag {record_tag!r}")
        self.record_tag = record_tag
        self.state = ParserState.IDLE
        self._path: list[str] = []
        self._record: BulkRecord | None = None

    def start(self, tag: str, attrib: dict[str, str] | None = None) -> None:
        if self.state is ParserState.IDLE:
            if tag == self.record_tag:
                self.state = _STATE_FOR_TAG[tag]
                self._record = BulkRecord(kind=tag)
                self._path = []
            return

        self._path.append(tag)
        if tag == "pocLinkRef" and attrib:
            handle = (attrib.get("handle") or "").strip()
            if handle:
                self._record.poc_handles.append(handle)

    def end(self, tag: str, text: str | None = None) -> BulkRecord | None:
        """Process an end event; return the record when it completes."""
        if self.state is ParserState.IDLE:
            return None

        if not self._path:
            if tag != self.record_tag:
                return None
            record = self._record
            self.state = ParserState.IDLE
            self._record = None
            return record

        self._path.pop()
        value = (text or "").strip()
        if not value:
            return None

        if tag == "email":
            self._record.emails.append(value)
            return None

        parent = self._path[-1] if self._path else None
        if parent is None:
            self._record.fields[tag] = value
        elif parent == "streetAddress" and tag == "line":
            self._record.street_lines.append(value)
        elif parent == "iso3166-1" and tag == "code2":
            self._record.fields["iso3166-1"] = value
        return None


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def parse_asns(
    source: XmlSource,
    *,
    expansion_limit: int = RANGE_EXPANSION_LIMIT,
) -> tuple[dict[int, MappingProxyType], set[str]]:
    """Pass 1: read ASN ranges and collect referenced org handles.

    Ranges of at most *expansion_limit* ASNs are expanded to one entry per
    ASN, all sharing one read-only attribute map; wider ranges keep only
    their start ASN.  Ranges owned by the reserved pool are dropped.

    Returns:
        ``(asns, referenced_org_handles)``.
    """
    asns: dict[int, MappingProxyType] = {}
    referenced: set[str] = set()

    for record in _scan(source, "asn", stage="ASNs"):
        start = _parse_int(record.fields.get("startAsNumber"), -1)
        if start <= 0:
            continue
        end = _parse_int(record.fields.get("endAsNumber"), start)
        org_handle = record.fields.get("orgHandle")
        if org_handle == RESERVED_ORG_HANDLE:
            continue

        values: dict[str, str] = {}
        if org_handle:
            values["orghandle"] = org_handle
            referenced.add(org_handle)
        if "name" in record.fields:
            values["name"] = record.fields["name"]
        shared = MappingProxyType(values)

        if end - start + 1 <= expansion_limit:
            for asn in range(start, end + 1):
                asns[asn] = shared
        else:
            asns[start] = shared

    logger.info(
        "Parsed %d ASNs referencing %d unique orgs", len(asns), len(referenced)
    )
    return asns, referenced


def parse_orgs(
    source: XmlSource,
    referenced_orgs: set[str],
) -> tuple[dict[str, ArinOrg], set[str], int]:
    """Pass 2: build ``ArinOrg`` objects for referenced handles only.

    Returns:
        ``(orgs, referenced_poc_handles, skipped_count)``.
    """
    orgs: dict[str, ArinOrg] = {}
    referenced_pocs: set[str] = set()
    skipped = 0

    for record in _scan(source, "org", stage="orgs"):
        handle = record.fields.get("handle")
        if handle is None or handle not in referenced_orgs:
            skipped += 1
            continue
        orgs[handle] = _build_org(record)
        referenced_pocs.update(record.poc_handles)

    if skipped:
        logger.info("Skipped %d unreferenced orgs", skipped)
    logger.info(
        "Loaded %d orgs referencing %d unique POCs", len(orgs), len(referenced_pocs)
    )
    return orgs, referenced_pocs, skipped


def map_org_contacts(
    source: XmlSource,
    referenced_orgs: set[str],
) -> dict[str, set[str]]:
    """Re-scan the orgs file for org handle -> POC handles (referenced orgs)."""
    mapping: dict[str, set[str]] = {}
    for record in _scan(source, "org", stage="org-to-POC"):
        handle = record.fields.get("handle")
        if handle is not None and handle in referenced_orgs:
            mapping[handle] = set(record.poc_handles)
    return mapping


def parse_pocs(
    source: XmlSource,
    referenced_pocs: set[str],
) -> tuple[dict[str, list[str]], int]:
    """Pass 3: collect email addresses of referenced POCs.

    POCs without any email are left out.

    Returns:
        ``(emails_by_poc_handle, skipped_count)``.
    """
    emails_by_poc: dict[str, list[str]] = {}
    skipped = 0

    for record in _scan(source, "poc", stage="POCs"):
        handle = record.fields.get("handle")
        if handle is None:
            continue
        if handle not in referenced_pocs:
            skipped += 1
            continue
        if record.emails:
            emails_by_poc[handle] = list(record.emails)

    if skipped:
        logger.info("Skipped %d unreferenced POCs", skipped)
    logger.info("Loaded emails for %d POCs", len(emails_by_poc))
    return emails_by_poc, skipped


def parse_bulk_whois(
    asns_file: XmlSource,
    orgs_file: XmlSource,
    pocs_file: XmlSource,
    *,
    expansion_limit: int = RANGE_EXPANSION_LIMIT,
) -> ArinBulkData:
    """Run all passes and attach contact email domains to the kept orgs.

    File-object sources must be seekable when the same object is passed
    for both orgs passes; paths are simply reopened.

    Raises:
        RegistryParseError: If any pass hits malformed XML or an I/O error.
            Nothing partial is returned.
    """
    asns, referenced_orgs = parse_asns(asns_file, expansion_limit=expansion_limit)
    orgs, referenced_pocs, _ = parse_orgs(orgs_file, referenced_orgs)
    emails_by_poc, _ = parse_pocs(pocs_file, referenced_pocs)

    if hasattr(orgs_file, "seek"):
        orgs_file.seek(0)
    org_to_pocs = map_org_contacts(orgs_file, referenced_orgs)

    with_domains: dict[str, ArinOrg] = {}
    for handle, org in orgs.items():
        domains: set[str] = set()
        for poc_handle in org_to_pocs.get(handle, ()):
            for email in emails_by_poc.get(poc_handle, ()):
                domain = extract_domain(email)
                if domain is not None:
                    domains.add(domain.lower())
        with_domains[handle] = org.with_email_domains(sorted(domains))

    return ArinBulkData(asns=asns, orgs=with_domains)


def extract_domain(email: str | None) -> str | None:
    """Return the part after the last ``@``, or ``None`` if there is none."""
    if not email:
        return None
    at = email.rfind("@")
    if at <= 0 or at == len(email) - 1:
        return None
    return email[at + 1 :]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _scan(source: XmlSource, record_tag: str, *, stage: str) -> Iterator[BulkRecord]:
    """Stream *source* and yield one ``BulkRecord`` per *record_tag* element.

    Raises:
        RegistryParseError: On malformed XML or read errors.
    """
    reader = RecordReader(record_tag)
    depth = 0
    try:
        events = etree.iterparse(
            _open_arg(source),
            events=("start", "end"),
            resolve_entities=False,
            no_network=True,
            huge_tree=True,
        )
        for event, elem in events:
            tag = etree.QName(elem.tag).localname
            if event == "start":
                depth += 1
                reader.start(tag, dict(elem.attrib))
                continue

            depth -= 1
            record = reader.end(tag, elem.text)
            if record is not None:
                yield record
            if depth == 1:
                # Child of the document root is done: release it.
                elem.clear()
                parent = elem.getparent()
                while elem.getprevious() is not None and parent is not None:
                    del parent[0]
    except (etree.XMLSyntaxError, OSError) as exc:
        raise RegistryParseError(
            f"Failed to parse ARIN {stage} file {_source_name(source)}: {exc}"
        ) from exc


def _open_arg(source: XmlSource) -> str | BinaryIO:
    if isinstance(source, Path):
        return str(source)
    return source


def _source_name(source: XmlSource) -> str:
    if isinstance(source, (str, Path)):
        return str(source)
    return getattr(source, "name", "<stream>")


def _build_org(record: BulkRecord) -> ArinOrg:
    fields = record.fields
    return ArinOrg(
        name=fields.get("name"),
        address=_street_address(record),
        city=fields.get("city"),
        state=fields.get("iso3166-2"),
        country=fields.get("iso3166-1"),
        postal_code=fields.get("postalCode"),
    )


def _street_address(record: BulkRecord) -> str | None:
    parts = [
        record.fields[f"streetLine{i}"].strip()
        for i in range(1, 7)
        if record.fields.get(f"streetLine{i}", "").strip()
    ]
    parts.extend(line for line in record.street_lines if line.strip())
    return ", ".join(parts) if parts else None


def _parse_int(value: str | None, fallback: int) -> int:
    if value is None:
        return fallback
    try:
        return int(value.strip())
    except ValueError:
        return fallback
