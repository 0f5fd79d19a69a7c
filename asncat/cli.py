"""CLI entry point for the asncat tool."""

import logging
import sys
from dataclasses import replace
from datetime import timedelta

import click
import requests

from asncat.aggregator import aggregate
from asncat.allocations import AllocationCache, AllocationError
from asncat.classifier import ClassificationError, OpenAIClassifier, RequestLog
from asncat.config import AsncatConfig, ConfigError, StatePaths, load_config
from asncat.output import render
from asncat.pipeline import Pipeline
from asncat.ratelimit import TokenRateLimiter
from asncat.registry import ChainedSource, MetadataSource
from asncat.registry.builder import RegistryBuildError, RegistryBuilder
from asncat.registry.database import RegistryCacheError, RegistryDatabase
from asncat.registry.rdap import RdapClient
from asncat.store import read_rows

logger = logging.getLogger(__name__)

FORMATS = ("table", "json")
DEFAULT_LIMIT = 50


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.asncat/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Classify Autonomous System Numbers into operator categories."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.debug("Config loaded: %s", _redacted(cfg))
    ctx.obj = cfg


@main.command()
@click.option(
    "--limit",
    "-l",
    default=DEFAULT_LIMIT,
    show_default=True,
    type=click.IntRange(min=0),
    help="Maximum ASNs to classify this run (0 = no limit).",
)
@click.option(
    "--output",
    "-o",
    "output_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Output file (default: <state_dir>/asn-classifications.tsv).",
)
@click.option(
    "--reprocess",
    default=None,
    help="Comma-separated ASNs to drop from the output and classify again.",
)
@click.option(
    "--accept-unknowns",
    is_flag=True,
    help="Write classifications with Unknown fields and treat them as final.",
)
@click.option(
    "--api-key",
    envvar="OPENAI_API_KEY",
    default=None,
    help="OpenAI API key (default: $OPENAI_API_KEY).",
)
@click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Format of the end-of-run summary.",
)
@click.pass_obj
def classify(
    cfg: AsncatConfig,
    limit: int,
    output_path: str | None,
    reprocess: str | None,
    accept_unknowns: bool,
    api_key: str | None,
    output_format: str,
) -> None:
    """Classify allocated ASNs, resuming where the last run stopped."""
    if not api_key or not api_key.strip():
        _fail("Missing OpenAI API key. Set OPENAI_API_KEY or pass --api-key.")

    paths = StatePaths.from_config(cfg)
    paths.ensure_directories()
    session = requests.Session()
    reprocess_asns = parse_asn_list(reprocess) if reprocess else []
    if reprocess is not None and not reprocess_asns:
        _fail("No valid ASNs given to --reprocess.")

    try:
        source = _metadata_source(cfg, paths, session)
    except RegistryCacheError as exc:
        _fail(str(exc))

    logger.info(
        "Model: %s | OpenAI: %s | State: %s",
        cfg.model,
        cfg.openai_base_url,
        paths.base_dir,
    )
    classifier = OpenAIClassifier(
        api_key,
        base_url=cfg.openai_base_url,
        model=cfg.model,
        timeout=cfg.openai_timeout,
        session=session,
        rate_limiter=TokenRateLimiter(cfg.tokens_per_minute, cfg.max_context_tokens),
        verbose=bool(reprocess_asns),
        request_log=RequestLog(paths.request_log_dir) if reprocess_asns else None,
    )
    pipeline = Pipeline(source, classifier, accept_unknowns=accept_unknowns)
    output = paths.output_file(output_path)

    try:
        if reprocess_asns:
            summary = pipeline.reprocess(reprocess_asns, output)
        else:
            cache = AllocationCache(
                paths.allocations_dir,
                cfg.registry_sources,
                ttl=timedelta(hours=cfg.registry_ttl_hours),
                session=session,
            )
            allocations = cache.load()
            logger.info(
                "Fetched %d allocation blocks (cache TTL %d hours)",
                len(allocations),
                cfg.registry_ttl_hours,
            )
            summary = pipeline.run(allocations, output, limit=limit or None)
    except (AllocationError, ClassificationError, OSError) as exc:
        _fail(str(exc))

    render(summary, output_format)


@main.command("build-registry")
@click.option(
    "--skip-arin-bulk",
    is_flag=True,
    help="Build without ARIN bulk whois data (most ARIN ASNs stay Unknown).",
)
@click.option(
    "--arin-api-key",
    default=None,
    help="ARIN API key for bulk whois downloads.",
)
@click.pass_obj
def build_registry(
    cfg: AsncatConfig, skip_arin_bulk: bool, arin_api_key: str | None
) -> None:
    """Download registry data and rebuild the local registry cache."""
    paths = StatePaths.from_config(cfg)
    paths.ensure_directories()
    builder = RegistryBuilder(
        paths.registry_db,
        cfg,
        skip_arin_bulk=skip_arin_bulk,
        arin_api_key=arin_api_key,
    )
    try:
        count = builder.build()
    except (RegistryBuildError, OSError) as exc:
        _fail(str(exc))
    click.echo(f"Registry cache ready: {count} ASNs -> {paths.registry_db}")


@main.command()
@click.option(
    "--output",
    "-o",
    "output_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Output file to summarize (default: <state_dir>/asn-classifications.tsv).",
)
@click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)
@click.pass_obj
def stats(cfg: AsncatConfig, output_path: str | None, output_format: str) -> None:
    """Show the category distribution of the output store."""
    output = StatePaths.from_config(cfg).output_file(output_path)
    render(None, output_format, stats=aggregate(read_rows(output)))


def parse_asn_list(value: str) -> list[int]:
    """Parse ``"13335, AS15169"`` into ASNs; invalid tokens are dropped."""
    asns: list[int] = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        digits = token.upper().removeprefix("AS")
        try:
            asn = int(digits)
        except ValueError:
            logger.warning("Ignoring invalid ASN %r", token)
            continue
        if asn <= 0:
            logger.warning("Ignoring invalid ASN %r", token)
            continue
        asns.append(asn)
    return asns


def _metadata_source(
    cfg: AsncatConfig, paths: StatePaths, session: requests.Session
) -> MetadataSource:
    database = RegistryDatabase(paths.registry_db)
    if not cfg.rdap_fallback:
        if database.is_empty():
            raise RegistryCacheError(
                f"Registry cache {paths.registry_db} is empty. "
                "Run 'asncat build-registry' first."
            )
        return database
    rdap = RdapClient(cfg.rdap_base_url, timeout=cfg.rdap_timeout, session=session)
    if database.is_empty():
        return rdap
    return ChainedSource(database, rdap)


def _redacted(cfg: AsncatConfig) -> AsncatConfig:
    if cfg.arin_api_key is None:
        return cfg
    return replace(cfg, arin_api_key="***")


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)
