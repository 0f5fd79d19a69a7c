"""One-shot registry cache build from RIR downloads.

The build downloads everything into a temporary directory, assembles the
metadata and only then replaces the cache file.  Any fatal error leaves
the previous cache untouched.
"""

import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import quote

import requests

from asncat.config import AsncatConfig
from asncat.models import ArinBulkData, DelegatedRecord, RpslObject
from asncat.registry import DownloadError, RegistryParseError, download_to_file
from asncat.registry.assembler import assemble_metadata
from asncat.registry.bulkwhois import parse_bulk_whois
from asncat.registry.database import write_database
from asncat.registry.delegated import parse_delegated_file
from asncat.registry.rpsl import index_by_asn, iter_rpsl_objects_from_gz

logger = logging.getLogger(__name__)

DELEGATED_EXTENDED_URLS: dict[str, str] = {
    "arin": "https://ftp.arin.net/pub/stats/arin/delegated-arin-extended-latest",
    "apnic": "https://ftp.apnic.net/pub/stats/apnic/delegated-apnic-extended-latest",
    "afrinic": "https://ftp.afrinic.net/pub/stats/afrinic/delegated-afrinic-extended-latest",
    "lacnic": "https://ftp.lacnic.net/pub/stats/lacnic/delegated-lacnic-extended-latest",
    "ripe": "https://ftp.ripe.net/pub/stats/ripencc/delegated-ripencc-extended-latest",
}

# LACNIC publishes no aut-num dump; its ASNs come from the delegated file.
RPSL_DUMP_URLS: dict[str, str] = {
    "ripe aut-num": "https://ftp.ripe.net/ripe/dbase/split/ripe.db.aut-num.gz",
    "apnic aut-num": "https://ftp.apnic.net/apnic/whois/apnic.db.aut-num.gz",
    "afrinic aut-num": "https://ftp.afrinic.net/pub/dbase/afrinic.db.gz",
    "arin aut-num": "https://ftp.arin.net/pub/rr/arin.db.gz",
}

ARIN_BULK_URL = "https://accountws.arin.net/public/rest/downloads/bulkwhois/"
ARIN_KEY_ENV_VARS = ("ASNCAT_ARIN_API_KEY", "ARIN_API_KEY")


class RegistryBuildError(Exception):
    """Raised when the registry cache cannot be built."""


class RegistryBuilder:
    """Download, parse and assemble the registry cache.

    Args:
        database_path: Cache file to (re)write.
        config: Loaded configuration (used for the ARIN API key).
        session: HTTP session; a new one is created when omitted.
        skip_arin_bulk: Build without ARIN bulk whois data.
        arin_api_key: Explicit ARIN API key, taking precedence over the
            config file and environment.
    """

    def __init__(
        self,
        database_path: Path | str,
        config: AsncatConfig,
        *,
        session: requests.Session | None = None,
        skip_arin_bulk: bool = False,
        arin_api_key: str | None = None,
    ) -> None:
        self.database_path = Path(database_path)
        self.config = config
        self.session = session or requests.Session()
        self.skip_arin_bulk = skip_arin_bulk
        self.arin_api_key = arin_api_key

    def build(self) -> int:
        """Run the whole build.

        Returns:
            Number of ASN records written.

        Raises:
            RegistryBuildError: On a failed mandatory download, a parse
                error, or an empty ARIN result.
        """
        logger.info("Starting registry cache build...")
        try:
            with tempfile.TemporaryDirectory(prefix="registry-cache-build") as tmp:
                work_dir = Path(tmp)
                arin = self.fetch_arin_bulk(work_dir)
                delegated = self.fetch_delegated(work_dir)
                rpsl_by_asn = self.fetch_rpsl(work_dir)
                count = write_database(
                    self.database_path, assemble_metadata(delegated, rpsl_by_asn, arin)
                )
        except (DownloadError, RegistryParseError) as exc:
            raise RegistryBuildError(str(exc)) from exc
        logger.info("Wrote registry cache with %d entries to %s", count, self.database_path)
        return count

    def fetch_arin_bulk(self, work_dir: Path) -> ArinBulkData:
        if self.skip_arin_bulk:
            logger.info("Skipping ARIN bulk download (--skip-arin-bulk)")
            return ArinBulkData.empty()

        api_key = self.resolve_arin_api_key()
        files: dict[str, Path] = {}
        for name in ("asns", "orgs", "pocs"):
            url = f"{ARIN_BULK_URL}{name}.xml?apikey={quote(api_key, safe='')}"
            logger.info("Downloading ARIN %s.xml...", name)
            files[name] = download_to_file(
                self.session, url, work_dir / f"arin_{name}.xml", label=f"ARIN {name}.xml"
            )

        data = parse_bulk_whois(files["asns"], files["orgs"], files["pocs"])
        if not data.asns:
            raise RegistryBuildError(
                "ARIN bulk download returned no ASN data. Your API key may not "
                "have bulk whois access enabled (request it at "
                "https://account.arin.net). To proceed without ARIN bulk data, "
                "most ARIN ASNs will show 'Unknown', add --skip-arin-bulk."
            )
        logger.info(
            "ARIN bulk whois: %d ASNs, %d orgs", len(data.asns), len(data.orgs)
        )
        return data

    def fetch_delegated(self, work_dir: Path) -> dict[int, list[DelegatedRecord]]:
        """Download every delegated-extended file; all of them are required."""
        by_asn: dict[int, list[DelegatedRecord]] = {}
        for registry, url in DELEGATED_EXTENDED_URLS.items():
            logger.info("Downloading delegated extended from %s...", registry)
            path = download_to_file(
                self.session,
                url,
                work_dir / f"delegated-{registry}.txt",
                label=f"delegated extended for {registry}",
            )
            for asn, records in parse_delegated_file(path).items():
                by_asn.setdefault(asn, []).extend(records)
            path.unlink(missing_ok=True)
        logger.info(
            "Downloaded delegated extended data from %d registries",
            len(DELEGATED_EXTENDED_URLS),
        )
        return by_asn

    def fetch_rpsl(self, work_dir: Path) -> dict[int, RpslObject]:
        """Download the aut-num dumps; unreachable dumps are skipped."""
        by_asn: dict[int, RpslObject] = {}
        for description, url in RPSL_DUMP_URLS.items():
            dest = work_dir / (description.replace(" ", "-") + ".gz")
            try:
                download_to_file(self.session, url, dest, label=description)
            except DownloadError as exc:
                logger.warning("Skipping %s: %s", description, exc)
                continue
            logger.info("Downloaded %s into %s", description, dest)
            index_by_asn(iter_rpsl_objects_from_gz(dest), into=by_asn)
            dest.unlink(missing_ok=True)
        logger.info("Indexed %d aut-num objects", len(by_asn))
        return by_asn

    def resolve_arin_api_key(self) -> str:
        """Pick the ARIN key: explicit argument, config file, environment.

        Raises:
            RegistryBuildError: If the explicit key is invalid or no key is
                available anywhere.
        """
        if self.arin_api_key is not None:
            key = sanitize_key(self.arin_api_key, "--arin-api-key")
            if key is None:
                raise RegistryBuildError(
                    "Invalid ARIN API key provided via --arin-api-key."
                )
            return key

        key = sanitize_key(self.config.arin_api_key, "config")
        if key is not None:
            return key

        for var in ARIN_KEY_ENV_VARS:
            key = sanitize_key(os.environ.get(var), var)
            if key is not None:
                return key

        raise RegistryBuildError(
            "ARIN API key required. Set ASNCAT_ARIN_API_KEY or ARIN_API_KEY, "
            "add arin_api_key to the config file, pass --arin-api-key, or use "
            "--skip-arin-bulk."
        )


def sanitize_key(value: str | None, source: str) -> str | None:
    """Trim *value*; reject blanks and keys containing whitespace."""
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if any(ch.isspace() for ch in trimmed):
        logger.warning(
            "Ignoring ARIN API key from %s because it contains whitespace.", source
        )
        return None
    return trimmed
