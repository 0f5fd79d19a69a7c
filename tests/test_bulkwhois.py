"""Tests for asncat.registry.bulkwhois (ARIN bulk-whois XML passes)."""

from io import BytesIO
from pathlib import Path

import pytest

from asncat.registry import RegistryParseError
from asncat.registry.bulkwhois import (
    ParserState,
    RecordReader,
    extract_domain,
    map_org_contacts,
    parse_asns,
    parse_bulk_whois,
    parse_orgs,
    parse_pocs,
)

_NS = "http://www.arin.net/bulkwhois/core/v1"

_ASNS_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<asns xmlns="{_NS}">
  <asn>
    <handle>AS64500</handle>
    <name>EXAMPLE-AS</name>
    <orgHandle>EX-1</orgHandle>
    <startAsNumber>64500</startAsNumber>
    <endAsNumber>64501</endAsNumber>
  </asn>
  <asn>
    <name>RESERVED</name>
    <orgHandle>IANA</orgHandle>
    <startAsNumber>64512</startAsNumber>
    <endAsNumber>64520</endAsNumber>
  </asn>
  <asn>
    <name>ZERO</name>
    <orgHandle>ZERO-1</orgHandle>
    <startAsNumber>0</startAsNumber>
    <endAsNumber>0</endAsNumber>
  </asn>
  <asn>
    <name>WIDE-AS</name>
    <orgHandle>WIDE-1</orgHandle>
    <startAsNumber>100000</startAsNumber>
    <endAsNumber>110000</endAsNumber>
  </asn>
</asns>
""".encode()

_ORGS_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<orgs xmlns="{_NS}">
  <org>
    <handle>EX-1</handle>
    <name>Example Networks LLC</name>
    <city>Springfield</city>
    <iso3166-1>
      <code2>US</code2>
      <name>UNITED STATES</name>
    </iso3166-1>
    <iso3166-2>VA</iso3166-2>
    <postalCode>22150</postalCode>
    <streetAddress>
      <line number="1">1 Main St</line>
      <line number="2">Suite 5</line>
    </streetAddress>
    <pocLinks>
      <pocLinkRef function="AD" handle="ADMIN-ARIN"/>
      <pocLinkRef function="T" handle="TECH-ARIN"/>
    </pocLinks>
  </org>
  <org>
    <handle>UNUSED-1</handle>
    <name>Unreferenced Org</name>
    <pocLinks>
      <pocLinkRef function="AD" handle="OTHER-ARIN"/>
    </pocLinks>
  </org>
</orgs>
""".encode()

_POCS_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<pocs xmlns="{_NS}">
  <poc>
    <handle>ADMIN-ARIN</handle>
    <emails><email>noc@Example.NET</email></emails>
  </poc>
  <poc>
    <handle>TECH-ARIN</handle>
    <emails>
      <email>ops@example.net</email>
      <email>abuse@example-abuse.com</email>
    </emails>
  </poc>
  <poc>
    <handle>OTHER-ARIN</handle>
    <emails><email>x@other.org</email></emails>
  </poc>
</pocs>
""".encode()


class TestRecordReader:
    """The reader works on plain events, no XML required."""

    def test_collects_record(self) -> None:
        reader = RecordReader("org")
        reader.start("orgs")
        reader.start("org")
        assert reader.state is ParserState.IN_ORG

        reader.start("handle")
        assert reader.end("handle", "EX-1") is None
        reader.start("pocLinks")
        reader.start("pocLinkRef", {"handle": "P-1"})
        reader.end("pocLinkRef", None)
        reader.end("pocLinks", "\n  ")
        record = reader.end("org", None)

        assert record is not None
        assert record.fields == {"handle": "EX-1"}
        assert record.poc_handles == ["P-1"]
        assert reader.state is ParserState.IDLE

    def test_nested_name_does_not_overwrite_record_name(self) -> None:
        reader = RecordReader("org")
        reader.start("org")
        reader.start("name")
        reader.end("name", "Real Org")
        reader.start("iso3166-1")
        reader.start("code2")
        reader.end("code2", "CA")
        reader.start("name")
        reader.end("name", "CANADA")
        reader.end("iso3166-1", None)
        record = reader.end("org", None)

        assert record.fields["name"] == "Real Org"
        assert record.fields["iso3166-1"] == "CA"

    def test_events_outside_records_are_ignored(self) -> None:
        reader = RecordReader("poc")
        assert reader.end("handle", "stray") is None
        assert reader.state is ParserState.IDLE

    def test_unsupported_tag(self) -> None:
        with pytest.raises(ValueError):
            RecordReader("net")


class TestParseAsns:
    def test_small_range_expanded_with_shared_map(self) -> None:
        asns, referenced = parse_asns(BytesIO(_ASNS_XML))

        assert asns[64500] is asns[64501]
        assert dict(asns[64500]) == {"orghandle": "EX-1", "name": "EXAMPLE-AS"}
        assert "EX-1" in referenced

    def test_reserved_pool_and_zero_start_dropped(self) -> None:
        asns, referenced = parse_asns(BytesIO(_ASNS_XML))

        assert not any(64512 <= asn <= 64520 for asn in asns)
        assert 0 not in asns
        assert "IANA" not in referenced
        assert "ZERO-1" not in referenced

    def test_wide_range_kept_at_start_only(self) -> None:
        asns, _ = parse_asns(BytesIO(_ASNS_XML))

        assert asns[100000]["name"] == "WIDE-AS"
        assert 100001 not in asns

    def test_custom_expansion_limit(self) -> None:
        asns, _ = parse_asns(BytesIO(_ASNS_XML), expansion_limit=1)

        assert 64500 in asns
        assert 64501 not in asns

    def test_missing_end_means_single_asn(self) -> None:
        xml = (
            b"<asns><asn><name>ONE</name><orgHandle>O-1</orgHandle>"
            b"<startAsNumber>7</startAsNumber></asn></asns>"
        )
        asns, _ = parse_asns(BytesIO(xml))

        assert list(asns) == [7]

    def test_malformed_xml_raises(self) -> None:
        with pytest.raises(RegistryParseError, match="ARIN ASNs file"):
            parse_asns(BytesIO(b"<asns><asn><name>broken"))


class TestParseOrgsAndPocs:
    def test_only_referenced_orgs_kept(self) -> None:
        orgs, pocs, skipped = parse_orgs(BytesIO(_ORGS_XML), {"EX-1"})

        assert set(orgs) == {"EX-1"}
        assert pocs == {"ADMIN-ARIN", "TECH-ARIN"}
        assert skipped == 1

    def test_org_fields(self) -> None:
        orgs, _, _ = parse_orgs(BytesIO(_ORGS_XML), {"EX-1"})
        org = orgs["EX-1"]

        assert org.name == "Example Networks LLC"
        assert org.city == "Springfield"
        assert org.state == "VA"
        assert org.country == "US"
        assert org.postal_code == "22150"
        assert org.address == "1 Main St, Suite 5"

    def test_map_org_contacts(self) -> None:
        mapping = map_org_contacts(BytesIO(_ORGS_XML), {"EX-1"})

        assert mapping == {"EX-1": {"ADMIN-ARIN", "TECH-ARIN"}}

    def test_only_referenced_pocs_kept(self) -> None:
        emails, skipped = parse_pocs(BytesIO(_POCS_XML), {"ADMIN-ARIN", "TECH-ARIN"})

        assert emails == {
            "ADMIN-ARIN": ["noc@Example.NET"],
            "TECH-ARIN": ["ops@example.net", "abuse@example-abuse.com"],
        }
        assert skipped == 1


class TestParseBulkWhois:
    def test_end_to_end_from_streams(self) -> None:
        data = parse_bulk_whois(BytesIO(_ASNS_XML), BytesIO(_ORGS_XML), BytesIO(_POCS_XML))

        assert set(data.orgs) == {"EX-1"}
        assert data.orgs["EX-1"].email_domains == ("example-abuse.com", "example.net")
        assert data.asns[64501]["orghandle"] == "EX-1"

    def test_end_to_end_from_paths(self, tmp_path: Path) -> None:
        asns = tmp_path / "asns.xml"
        orgs = tmp_path / "orgs.xml"
        pocs = tmp_path / "pocs.xml"
        asns.write_bytes(_ASNS_XML)
        orgs.write_bytes(_ORGS_XML)
        pocs.write_bytes(_POCS_XML)

        data = parse_bulk_whois(asns, orgs, pocs)

        assert data.orgs["EX-1"].name == "Example Networks LLC"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(RegistryParseError):
            parse_bulk_whois(
                tmp_path / "nope.xml", BytesIO(_ORGS_XML), BytesIO(_POCS_XML)
            )


class TestExtractDomain:
    @pytest.mark.parametrize(
        "email, expected",
        [
            ("noc@example.net", "example.net"),
            ("weird@name@example.org", "example.org"),
            ("no-at-sign", None),
            ("trailing@", None),
            ("@leading.net", None),
            (None, None),
            ("", None),
        ],
    )
    def test_values(self, email: str | None, expected: str | None) -> None:
        assert extract_domain(email) == expected
