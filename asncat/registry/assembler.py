"""Merge delegated, RPSL and ARIN bulk-whois data into one record per ASN.

Precedence, per field:

* name: RPSL ``as-name`` -> RPSL ``descr`` -> bulk-whois ASN name -> "Unknown"
* org handle: RPSL ``org`` -> ``org-name`` -> ``org-hdl`` -> bulk-whois handle
* organization: bulk-whois org name -> org handle -> name -> "Unknown"
* country, registry, status, allocation date: delegated record only
"""

import logging
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime

from asncat.models import (
    UNKNOWN,
    ArinBulkData,
    ArinOrg,
    AsnMetadata,
    DelegatedRecord,
    Entity,
    RpslObject,
)

logger = logging.getLogger(__name__)


def assemble_metadata(
    delegated: Mapping[int, list[DelegatedRecord]],
    rpsl_by_asn: Mapping[int, RpslObject],
    arin: ArinBulkData,
) -> Iterator[AsnMetadata]:
    """Yield one ``AsnMetadata`` per ASN seen in any source, ascending.

    When several delegated lines claim an ASN, the first one wins.
    """
    all_asns = sorted(set(delegated) | set(rpsl_by_asn) | set(arin.asns))
    logger.info("Assembling metadata for %d ASNs", len(all_asns))
    fetched_at = datetime.now(UTC)
    for asn in all_asns:
        records = delegated.get(asn)
        yield build_metadata(
            asn,
            records[0] if records else None,
            rpsl_by_asn.get(asn),
            arin,
            fetched_at=fetched_at,
        )


def build_metadata(
    asn: int,
    delegated: DelegatedRecord | None,
    rpsl: RpslObject | None,
    arin: ArinBulkData,
    *,
    fetched_at: datetime | None = None,
) -> AsnMetadata:
    arin_asn = arin.asns.get(asn, {})
    name = _first_non_blank(
        _attr(rpsl, "as-name"), _attr(rpsl, "descr"), arin_asn.get("name"), UNKNOWN
    )
    org_handle = _first_non_blank(
        _attr(rpsl, "org"),
        _attr(rpsl, "org-name"),
        _attr(rpsl, "org-hdl"),
        arin_asn.get("orghandle"),
    )
    org = arin.orgs.get(org_handle) if org_handle else None
    organization = _first_non_blank(org.name if org else None, org_handle, name, UNKNOWN)

    registrant = Entity(
        handle=org_handle,
        name=organization,
        organization=organization,
        address=build_address(org) if org else None,
        emails=list(org.email_domains) if org else [],
    )

    remarks: list[str] = []
    if delegated is not None and delegated.raw:
        remarks.append(f"delegated: {delegated.raw}")
    if rpsl is not None and rpsl.raw_text:
        remarks.append("rpsl: " + rpsl.raw_text.replace("\n", " "))

    status = delegated.status if delegated else None
    return AsnMetadata(
        asn=asn,
        handle=_attr(rpsl, "aut-num"),
        start_autnum=asn,
        end_autnum=asn,
        name=name,
        country=delegated.country if delegated else None,
        registry=delegated.registry if delegated else None,
        statuses=[status] if status and status.strip() else [],
        registration_date=delegated.allocation_date if delegated else None,
        registrant=registrant,
        remarks=remarks,
        fetched_at=fetched_at or datetime.now(UTC),
    )


def build_address(org: ArinOrg) -> str | None:
    """Join the non-blank street, city, state, postal and country fields."""
    parts = [
        value.strip()
        for value in (org.address, org.city, org.state, org.postal_code, org.country)
        if value and value.strip()
    ]
    return ", ".join(parts) if parts else None


def _attr(obj: RpslObject | None, key: str) -> str | None:
    if obj is None:
        return None
    return obj.first(key)


def _first_non_blank(*values: str | None) -> str | None:
    for value in values:
        if value is not None and value.strip():
            return value.strip()
    return None
