"""Tests for asncat.registry.assembler."""

from datetime import UTC, datetime
from types import MappingProxyType

from asncat.models import UNKNOWN, ArinBulkData, ArinOrg, DelegatedRecord, RpslObject
from asncat.registry.assembler import assemble_metadata, build_address, build_metadata

_FETCHED = datetime(2024, 6, 1, tzinfo=UTC)


def _make_delegated(start: int = 64500, count: int = 1, **overrides) -> DelegatedRecord:
    defaults = dict(
        start=start,
        count=count,
        registry="arin",
        country="US",
        status="allocated",
        allocation_date="20240101",
        raw=f"arin|US|asn|{start}|{count}|20240101|allocated",
    )
    defaults.update(overrides)
    return DelegatedRecord(**defaults)


def _make_rpsl(asn: int = 64500, **attrs: list[str]) -> RpslObject:
    attributes = {"aut-num": [f"AS{asn}"]}
    attributes.update({k.replace("_", "-"): v for k, v in attrs.items()})
    raw = "".join(f"{k}: {v}\n" for k, values in attributes.items() for v in values)
    return RpslObject("aut-num", attributes, raw)


def _make_arin() -> ArinBulkData:
    shared = MappingProxyType({"orghandle": "EX-1", "name": "ARIN-NAME"})
    org = ArinOrg(
        name="Example Networks LLC",
        address="1 Main St",
        city="Springfield",
        state="VA",
        country="US",
        postal_code="22150",
        email_domains=("example.net",),
    )
    return ArinBulkData(asns={64500: shared, 64501: shared}, orgs={"EX-1": org})


class TestBuildMetadata:
    """Per-field precedence between the sources."""

    def test_delegated_only(self) -> None:
        meta = build_metadata(64500, _make_delegated(), None, ArinBulkData.empty())

        assert meta.name == UNKNOWN
        assert meta.country == "US"
        assert meta.registry == "arin"
        assert meta.statuses == ["allocated"]
        assert meta.registration_date == "20240101"
        assert meta.registrant.organization == UNKNOWN
        assert meta.handle is None
        assert meta.remarks == ["delegated: arin|US|asn|64500|1|20240101|allocated"]

    def test_rpsl_as_name_beats_descr_and_arin(self) -> None:
        rpsl = _make_rpsl(as_name=["RPSL-NAME"], descr=["Some description"])
        meta = build_metadata(64500, None, rpsl, _make_arin())

        assert meta.name == "RPSL-NAME"
        assert meta.handle == "AS64500"

    def test_descr_used_without_as_name(self) -> None:
        rpsl = _make_rpsl(descr=["First descr", "Second descr"])
        meta = build_metadata(64500, None, rpsl, ArinBulkData.empty())

        assert meta.name == "First descr"
        assert meta.entity_for_classification() == "First descr"

    def test_arin_name_and_org(self) -> None:
        meta = build_metadata(64501, _make_delegated(64501), None, _make_arin())

        assert meta.name == "ARIN-NAME"
        assert meta.registrant.handle == "EX-1"
        assert meta.registrant.organization == "Example Networks LLC"
        assert meta.registrant.emails == ["example.net"]
        assert meta.registrant.address == "1 Main St, Springfield, VA, 22150, US"

    def test_rpsl_org_handle_beats_arin_handle(self) -> None:
        rpsl = _make_rpsl(org=["ORG-RIPE-1"])
        meta = build_metadata(64500, None, rpsl, _make_arin())

        # Handle not in the ARIN orgs: organization falls back to the handle.
        assert meta.registrant.handle == "ORG-RIPE-1"
        assert meta.registrant.organization == "ORG-RIPE-1"
        assert meta.registrant.address is None

    def test_rpsl_remark_flattened(self) -> None:
        rpsl = _make_rpsl(as_name=["X"])
        meta = build_metadata(64500, None, rpsl, ArinBulkData.empty())

        assert meta.remarks == ["rpsl: aut-num: AS64500 as-name: X "]

    def test_blank_status_dropped(self) -> None:
        meta = build_metadata(
            1, _make_delegated(1, status="  "), None, ArinBulkData.empty()
        )
        assert meta.statuses == []

    def test_fetched_at_passed_through(self) -> None:
        meta = build_metadata(1, None, None, ArinBulkData.empty(), fetched_at=_FETCHED)
        assert meta.fetched_at == _FETCHED


class TestAssembleMetadata:
    def test_union_in_ascending_order(self) -> None:
        delegated = {70000: [_make_delegated(70000)], 64500: [_make_delegated()]}
        rpsl = {3320: _make_rpsl(3320, as_name=["DTAG"])}

        records = list(assemble_metadata(delegated, rpsl, _make_arin()))

        assert [r.asn for r in records] == [3320, 64500, 64501, 70000]
        assert len({r.fetched_at for r in records}) == 1

    def test_first_delegated_record_wins(self) -> None:
        first = _make_delegated(registry="arin", country="US")
        second = _make_delegated(registry="ripencc", country="NL")

        (record,) = assemble_metadata({64500: [first, second]}, {}, ArinBulkData.empty())

        assert record.registry == "arin"
        assert record.country == "US"


class TestBuildAddress:
    def test_skips_blank_parts(self) -> None:
        org = ArinOrg(name="X", address=" ", city="Paris", country="FR")
        assert build_address(org) == "Paris, FR"

    def test_all_blank(self) -> None:
        assert build_address(ArinOrg(name="X")) is None
