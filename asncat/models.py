"""Data models: registry records, ASN metadata, allocations, classifications."""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

UNKNOWN = "Unknown"


# ---------------------------------------------------------------------------
# Build-time registry records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DelegatedRecord:
    """One ``asn`` line of an RIR delegated-extended file.

    The same instance is indexed under every ASN of its range, so
    ``a is b`` holds for two ASNs claimed by the same line.

    Attributes:
        start: First ASN of the range.
        count: Number of ASNs in the range (always > 0).
        registry: Registry of record (e.g. "arin", "ripencc").
        country: ISO 3166-1 alpha-2 country code, possibly empty.
        status: Lifecycle status ("allocated", "assigned", "reserved", ...).
        allocation_date: Raw ``YYYYMMDD`` date field.
        raw: The original line, kept for audit remarks.
    """

    start: int
    count: int
    registry: str
    country: str
    status: str
    allocation_date: str
    raw: str


@dataclass(frozen=True)
class RpslObject:
    """An RPSL whois object (one blank-line delimited stanza).

    Attributes:
        object_type: Key of the first attribute (e.g. "aut-num").
        attributes: Lowercased key -> ordered list of values.
        raw_text: The stanza as it appeared in the dump.
    """

    object_type: str
    attributes: dict[str, list[str]]
    raw_text: str

    def first(self, key: str) -> str | None:
        """Return the first value of *key*, or ``None``."""
        values = self.attributes.get(key.lower())
        if not values:
            return None
        return values[0]


@dataclass(frozen=True)
class ArinOrg:
    """Organization record from the ARIN bulk-whois orgs file."""

    name: str | None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None
    email_domains: tuple[str, ...] = ()

    def with_email_domains(self, domains: list[str] | tuple[str, ...]) -> "ArinOrg":
        return replace(self, email_domains=tuple(domains))


@dataclass
class ArinBulkData:
    """Result of the three-pass bulk-whois parse.

    Attributes:
        asns: ASN -> attribute map (``name``, ``orghandle``). Entries of one
            expanded range share a single map.
        orgs: Org handle -> ``ArinOrg`` (referenced orgs only).
    """

    asns: dict[int, dict[str, str]] = field(default_factory=dict)
    orgs: dict[str, ArinOrg] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "ArinBulkData":
        return cls()


# ---------------------------------------------------------------------------
# Authoritative ASN metadata
# ---------------------------------------------------------------------------


@dataclass
class Entity:
    """A registrant or contact attached to an ASN.

    Attributes:
        handle: Registry handle of the entity.
        name: Display name (vCard ``fn``).
        organization: Organization name (vCard ``org``).
        kind: vCard kind ("org", "individual", ...).
        address: Single-line postal address.
        roles: RDAP roles ("registrant", "abuse", ...).
        emails: Email addresses or bare email domains.
        phones: Phone numbers.
        remarks: Free-text remarks.
        statuses: RDAP statuses.
    """

    handle: str | None = None
    name: str | None = None
    organization: str | None = None
    kind: str | None = None
    address: str | None = None
    roles: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    remarks: list[str] = field(default_factory=list)
    statuses: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "handle": self.handle,
            "name": self.name,
            "organization": self.organization,
            "kind": self.kind,
            "address": self.address,
            "roles": list(self.roles),
            "emails": list(self.emails),
            "phones": list(self.phones),
            "remarks": list(self.remarks),
            "statuses": list(self.statuses),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Entity":
        return cls(
            handle=data.get("handle"),
            name=data.get("name"),
            organization=data.get("organization"),
            kind=data.get("kind"),
            address=data.get("address"),
            roles=list(data.get("roles") or []),
            emails=list(data.get("emails") or []),
            phones=list(data.get("phones") or []),
            remarks=list(data.get("remarks") or []),
            statuses=list(data.get("statuses") or []),
        )


@dataclass
class AsnMetadata:
    """The merged, authoritative record for one ASN.

    This is what the classifier reads. Records in the registry cache are
    serialized with :meth:`to_dict` (camelCase keys, one JSON object per
    line).
    """

    asn: int
    handle: str | None = None
    start_autnum: int | None = None
    end_autnum: int | None = None
    name: str | None = None
    country: str | None = None
    registry: str | None = None
    type: str | None = None
    statuses: list[str] = field(default_factory=list)
    registration_date: str | None = None
    last_changed_date: str | None = None
    registrant: Entity | None = None
    contacts: list[Entity] = field(default_factory=list)
    remarks: list[str] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def organization_name(self) -> str | None:
        if self.registrant is None:
            return None
        return _first_non_blank(self.registrant.organization, self.registrant.name)

    def display_name(self) -> str | None:
        registrant_name = self.registrant.name if self.registrant else None
        return _first_non_blank(registrant_name, self.name)

    def entity_for_classification(self) -> str | None:
        """Best organization label: registrant org, registrant name, ASN name."""
        if self.registrant is None:
            return _first_non_blank(self.name)
        return _first_non_blank(
            self.registrant.organization, self.registrant.name, self.name
        )

    def to_dict(self) -> dict:
        return {
            "asn": self.asn,
            "handle": self.handle,
            "startAutnum": self.start_autnum,
            "endAutnum": self.end_autnum,
            "name": self.name,
            "country": self.country,
            "registry": self.registry,
            "type": self.type,
            "statuses": list(self.statuses),
            "registrationDate": self.registration_date,
            "lastChangedDate": self.last_changed_date,
            "registrant": self.registrant.to_dict() if self.registrant else None,
            "contacts": [c.to_dict() for c in self.contacts],
            "remarks": list(self.remarks),
            "fetchedAt": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AsnMetadata":
        registrant = data.get("registrant")
        fetched_at = data.get("fetchedAt")
        return cls(
            asn=int(data["asn"]),
            handle=data.get("handle"),
            start_autnum=data.get("startAutnum"),
            end_autnum=data.get("endAutnum"),
            name=data.get("name"),
            country=data.get("country"),
            registry=data.get("registry"),
            type=data.get("type"),
            statuses=list(data.get("statuses") or []),
            registration_date=data.get("registrationDate"),
            last_changed_date=data.get("lastChangedDate"),
            registrant=Entity.from_dict(registrant) if registrant else None,
            contacts=[Entity.from_dict(c) for c in data.get("contacts") or []],
            remarks=list(data.get("remarks") or []),
            fetched_at=(
                datetime.fromisoformat(fetched_at)
                if fetched_at
                else datetime.now(UTC)
            ),
        )

    @classmethod
    def minimal(
        cls,
        asn: int,
        name: str | None,
        country: str | None = None,
        organization: str | None = None,
        type: str | None = None,
    ) -> "AsnMetadata":
        """Build a bare record, mostly useful in tests and fallbacks."""
        entity = Entity(name=organization, organization=organization)
        return cls(
            asn=asn,
            start_autnum=asn,
            end_autnum=asn,
            name=name,
            country=country,
            type=type,
            registrant=entity,
        )


# ---------------------------------------------------------------------------
# Allocations and classification output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AsnAllocation:
    """An actionable (allocated/assigned) ASN range.

    Attributes:
        start_asn: First ASN in the range.
        count: Number of ASNs; must be positive.
        registry: Registry of record.
        country: Country code.
        status: "allocated" or "assigned".
        allocation_date: ISO date string, or None if unparseable.
    """

    start_asn: int
    count: int
    registry: str
    country: str
    status: str
    allocation_date: str | None = None

    def __post_init__(self) -> None:
        if self.count <= 0:
            raise ValueError("Allocation count must be positive")

    @property
    def end_asn(self) -> int:
        return self.start_asn + self.count - 1

    def to_dict(self) -> dict:
        return {
            "startAsn": self.start_asn,
            "count": self.count,
            "registry": self.registry,
            "country": self.country,
            "status": self.status,
            "allocationDate": self.allocation_date,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AsnAllocation":
        return cls(
            start_asn=int(data["startAsn"]),
            count=int(data["count"]),
            registry=data.get("registry") or "",
            country=data.get("country") or "",
            status=data.get("status") or "",
            allocation_date=data.get("allocationDate"),
        )


@dataclass(frozen=True)
class FinalClassification:
    """One row of the output store."""

    asn: int
    name: str | None
    organization: str | None
    category: str | None

    @property
    def is_unknown(self) -> bool:
        """True if any field is blank or the literal ``Unknown``."""
        return any(
            _is_unknown(v) for v in (self.name, self.organization, self.category)
        )

    @classmethod
    def unknown(cls, asn: int) -> "FinalClassification":
        return cls(asn=asn, name=UNKNOWN, organization=UNKNOWN, category=UNKNOWN)


@dataclass
class ClassificationResponse:
    """A classification together with its approximate prompt token cost."""

    classification: FinalClassification
    approximate_prompt_tokens: int


@dataclass
class RunSummary:
    """Outcome of one classification run, rendered at the end by the CLI.

    Attributes:
        mode: "resume" or "reprocess".
        output_path: Output store that was written.
        classified: Rows written during this run.
        skipped_unknown: Classifications dropped because a field was Unknown.
        missing_metadata: ASNs with no registry record.
        approx_tokens: Approximate prompt tokens sent.
        duration_seconds: Wall-clock duration.
        categories: Category -> count for the rows written in this run.
    """

    mode: str
    output_path: str
    classified: int = 0
    skipped_unknown: int = 0
    missing_metadata: int = 0
    approx_tokens: int = 0
    duration_seconds: float = 0.0
    categories: dict[str, int] = field(default_factory=dict)


def _is_unknown(value: str | None) -> bool:
    if value is None:
        return True
    trimmed = value.strip()
    return not trimmed or trimmed.lower() == UNKNOWN.lower()


def _first_non_blank(*values: str | None) -> str | None:
    for value in values:
        if value is not None and value.strip():
            return value.strip()
    return None
