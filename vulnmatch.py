#!/usr/bin/env python3
import json
import logging
import sys

import click

from vuln_matcher.config import load_settings
from vuln_matcher.errors import ExceptionCollection, VulnMatcherError
from vuln_matcher.fetcher import FeedFile, UpdatePipeline, feeds_from_settings
from vuln_matcher.scanner import VulnerabilityScanner, scan_results
from vuln_matcher.suppression import SuppressionEngine
from vuln_matcher.suppression_parser import load_suppression_files
from vuln_matcher.vulndb import VulnerabilityStore

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _parse_feed_option(value: str) -> FeedFile:
    feed_id, sep, url = value.partition("=")
    if not sep or not feed_id or not url:
        raise click.BadParameter(f"expected ID=URL, got '{value}'")
    return FeedFile(feed_id.strip(), url.strip())


# --- Reporting ---
def print_text_report(dependency):
    results = scan_results(dependency)
    click.echo(f"\n--- Vulnerabilities for {dependency.file_name} ---")
    if not results:
        click.echo("No vulnerabilities found.")
    for result in results:
        vuln = result.vulnerability
        score = vuln.cvss_score if vuln.cvss_score is not None else "N/A"
        click.echo(f"  - {vuln.id}  {vuln.severity} ({score})")
        if vuln.matched_software is not None:
            click.echo(f"    Matched:  {vuln.matched_software}")
        for cwe, name in vuln.cwe_names:
            click.echo(f"    Weakness: {cwe} {name}")
        click.echo(f"    Desc:     {vuln.description}")
    if dependency.suppressed_vulnerabilities or dependency.suppressed_identifiers:
        click.echo(f"Suppressed: {len(dependency.suppressed_identifiers)} identifiers, "
                   f"{len(dependency.suppressed_vulnerabilities)} vulnerabilities")


def print_json_report(dependency):
    output = {
        "dependency": dependency.file_path,
        "vulnerabilities": [
            {
                "id": r.vulnerability.id,
                "severity": r.vulnerability.severity,
                "cvssScore": r.vulnerability.cvss_score,
                "cvssVector": r.vulnerability.cvss_vector,
                "cwes": list(r.vulnerability.cwes),
                "matchedSoftware": str(r.vulnerability.matched_software) if r.vulnerability.matched_software else None,
                "description": r.vulnerability.description,
            }
            for r in scan_results(dependency)
        ],
        "suppressedVulnerabilities": sorted(v.id for v in dependency.suppressed_vulnerabilities),
        "suppressedIdentifiers": sorted(i.value for i in dependency.suppressed_identifiers),
    }
    click.echo(json.dumps(output, indent=2))


# --- CLI Definition ---
@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML configuration file.")
@click.option("--data-dir", type=click.Path(file_okay=False), help="Directory holding the vulnerability database.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, config_path, data_dir, verbose):
    """
    vulnmatch: match CPE identifiers against a local copy of the NVD CVE feeds.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    try:
        ctx.obj = load_settings(config_path, data_directory=data_dir)
    except VulnMatcherError as e:
        raise click.ClickException(str(e))


@cli.command("update")
@click.option("--feed", "feeds", multiple=True, metavar="ID=URL", help="Feed file to load; repeatable. Defaults to the configured feeds.")
@click.option("--force", is_flag=True, help="Reload feeds even if they have not changed.")
@click.pass_obj
def update(settings, feeds, force):
    """Downloads NVD feed files and loads them into the database."""
    feed_files = [_parse_feed_option(f) for f in feeds] or feeds_from_settings(settings)
    if not feed_files:
        raise click.UsageError("No feeds configured; pass --feed ID=URL or set feed_urls in the config file.")
    settings.ensure_directories()
    store = VulnerabilityStore(settings)
    pipeline = UpdatePipeline(store, settings)
    try:
        store.open()
        feed_files = [pipeline.resolve_last_modified(f) for f in feed_files]
        results = pipeline.run(feed_files, force=force)
        for result in results:
            click.echo(f"{result.feed.id}: {result.stored} records stored, {len(result.failed_items)} failed")
        click.secho("Update completed successfully.", fg="green")
    except ExceptionCollection as e:
        click.secho(str(e), fg="red")
        sys.exit(2 if e.fatal else 1)
    except VulnMatcherError as e:
        click.secho(f"Error: {e}", fg="red")
        sys.exit(2)
    except KeyboardInterrupt:
        pipeline.cancel()
        click.secho("Update interrupted.", fg="yellow")
        sys.exit(130)
    finally:
        store.close()


@cli.command("check")
@click.argument("cpe")
@click.option("--suppression", "suppression_files", multiple=True, type=click.Path(exists=True, dir_okay=False), help="Suppression rule file; repeatable.")
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False), default='text', show_default=True, help="Output format.")
@click.pass_obj
def check(settings, cpe, suppression_files, output_format):
    """Lists the vulnerabilities affecting a CPE (cpe:2.3:... or cpe:/...)."""
    try:
        engine = SuppressionEngine(load_suppression_files(suppression_files))
        with VulnerabilityStore(settings) as store:
            if not store.data_exists():
                click.secho("Warning: the vulnerability database is empty; run 'vulnmatch update' first.", fg="yellow")
            dependency = VulnerabilityScanner(store, engine).check_cpe(cpe)
    except (VulnMatcherError, ValueError) as e:
        raise click.ClickException(str(e))
    if output_format.lower() == "json":
        print_json_report(dependency)
    else:
        print_text_report(dependency)


@cli.command("info")
@click.pass_obj
def info(settings):
    """Shows the database location and its stored properties."""
    click.echo(f"Database: {settings.database_file}")
    if not settings.database_file.exists():
        click.echo("The database has not been created yet.")
        return
    try:
        with VulnerabilityStore(settings) as store:
            for key, value in store.get_database_properties().get_metadata().items():
                click.echo(f"  {key}: {value}")
            click.echo(f"  vendor/product pairs: {len(store.get_vendor_product_list())}")
    except VulnMatcherError as e:
        raise click.ClickException(str(e))


@cli.command("purge")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def purge(settings, yes):
    """Deletes the local vulnerability database."""
    db_file = settings.database_file
    if not db_file.exists():
        click.echo(f"Nothing to purge at {db_file}")
        return
    if not yes:
        click.confirm(f"Delete {db_file}?", abort=True)
    db_file.unlink()
    click.secho(f"Deleted {db_file}", fg="green")


if __name__ == "__main__":
    cli()
