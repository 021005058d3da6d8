#!/usr/bin/env python3
"""
EPG Aggregator - builds one guide for an IPTV channel lineup

Application entry point. The pipeline is driven through Flask CLI commands:
  - flask --app app import-playlist  - load the channel lineup from M3U
  - flask --app app refresh-corpus   - rebuild grab candidates from site files
  - flask --app app ingest           - load bulk XMLTV feeds
  - flask --app app match-guide / match-candidates
  - flask --app app grab             - run the external grabber for unguided channels
  - flask --app app enrich           - add ratings and genres to programmes
  - flask --app app full-sync        - all of the above in order
"""

import json
import logging
import os

import click
from flask import Flask

from error_handling import handle_cli_errors
from models import Setting, db
from services.corpus_service import CorpusService
from services.enrichment_service import EnrichmentService
from services.events import PHASE_ENRICH, PHASE_GRAB, PHASE_MATCH
from services.grab_health_service import GrabHealthService
from services.grab_orchestrator import GrabOrchestrator
from services.guide_export_service import GuideExportService
from services.job_context import JobContext
from services.matching_service import ChannelMatchingService
from services.playlist_service import PlaylistService
from services.xmltv_ingest_service import XmltvIngestService
from schemas import validate_sources

DATA_DIR = os.path.abspath(os.getenv("DATA_DIR", "data"))

# Initialize Flask app
app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(DATA_DIR, 'epg.db')}")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

# SQLite configuration for grab worker threads
# - timeout: Wait up to 30 seconds for locks (default is 5)
# - check_same_thread: Allow use across threads (required for the grab pool)
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
    "connect_args": {
        "timeout": 30,
        "check_same_thread": False,
    },
    "pool_pre_ping": True,  # Verify connections before use
}

db.init_app(app)

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# One pipeline job at a time per process
pipeline_job = JobContext()


def echo_stats(stats):
    """Print a stats dict as JSON."""
    click.echo(json.dumps(stats, indent=2, default=str, sort_keys=True))


def run_job(name, func):
    """Run func(ctx) under the shared job context, recording its outcome."""
    pipeline_job.start(name)
    try:
        result = func(pipeline_job)
    except Exception as e:
        pipeline_job.complete(error=str(e))
        raise
    pipeline_job.complete(result=result)
    return result


# ============================================================================
# CLI Commands
# ============================================================================


@app.cli.command("init-db")
def init_db():
    """Initialize the database"""
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config[
        "SQLALCHEMY_DATABASE_URI"
    ]:
        os.makedirs(os.path.dirname(app.config["SQLALCHEMY_DATABASE_URI"][len("sqlite:///") :]) or ".", exist_ok=True)
    db.create_all()
    click.echo("Database initialized!")


@app.cli.command("import-playlist")
@click.argument("location")
@handle_cli_errors("Playlist import failed")
def import_playlist(location):
    """Import the channel lineup from an M3U URL or file"""
    echo_stats(PlaylistService.import_playlist(location))


@app.cli.command("refresh-corpus")
@click.argument("sites_dir")
@click.option("--repo-dir", default=None, help="Clone or pull the corpus repository here first")
@handle_cli_errors("Corpus refresh failed")
def refresh_corpus(sites_dir, repo_dir):
    """Rebuild grab candidates from a directory of *.channels.xml site files"""
    echo_stats(CorpusService.refresh_from_directory(sites_dir, repo_dir=repo_dir))


@app.cli.command("ingest")
@click.argument("sources", nargs=-1, required=True)
@handle_cli_errors("Guide ingest failed")
def ingest(sources):
    """Load one or more XMLTV feeds (URLs or files, optionally gzipped)"""
    locations = validate_sources(sources)
    stats = run_job("ingest", lambda ctx: XmltvIngestService.ingest_sources(locations, ctx))
    echo_stats(stats)
    if stats["failed"]:
        raise click.exceptions.Exit(1)


@app.cli.command("match-guide")
@handle_cli_errors("Guide matching failed")
def match_guide():
    """Match lineup channels against loaded guide channels"""
    echo_stats(run_job("match-guide", ChannelMatchingService.match_guide_channels))


@app.cli.command("match-candidates")
@handle_cli_errors("Candidate matching failed")
def match_candidates():
    """Match unmatched lineup channels against grab candidates"""
    echo_stats(run_job("match-candidates", ChannelMatchingService.match_candidates))


@app.cli.command("grab")
@click.option("--id", "xmltv_ids", multiple=True, help="Guide id to grab (default: every channel without data)")
@click.option("--days", type=int, default=None, help="Days of guide data to request")
@click.option("--concurrency", type=int, default=None, help="Channels grabbed at the same time")
@handle_cli_errors("Grab failed")
def grab(xmltv_ids, days, concurrency):
    """Run the external grabber for channels without guide data"""
    ids = list(xmltv_ids) or ChannelMatchingService.get_grab_targets()
    stats = run_job("grab", lambda ctx: GrabOrchestrator.grab_channels(ids, ctx, days=days, concurrency=concurrency))
    echo_stats({k: v for k, v in stats.items() if k != "results"})


@app.cli.command("enrich")
@click.option("--force", is_flag=True, help="Run even when enrichment is disabled in settings")
@handle_cli_errors("Enrichment failed")
def enrich(force):
    """Add ratings and genres to programmes from the show metadata service"""
    echo_stats(run_job("enrich", lambda ctx: EnrichmentService.run_pass(ctx, force=force)))


@app.cli.command("reenable")
@click.argument("xmltv_ids", nargs=-1, required=True)
@handle_cli_errors("Re-enable failed")
def reenable(xmltv_ids):
    """Clear auto-disable for guide ids and enable their channels"""
    echo_stats(GrabHealthService.reenable_channels(list(xmltv_ids)))


@app.cli.command("set-override")
@click.argument("channel_id", type=int)
@click.argument("epg_id", required=False, default="")
@handle_cli_errors("Could not update override")
def set_override(channel_id, epg_id):
    """Pin a channel to a guide id (omit the id to remove the pin)"""
    echo_stats(ChannelMatchingService.set_override(channel_id, epg_id))


@app.cli.command("set-setting")
@click.argument("key")
@click.argument("value")
@handle_cli_errors("Could not update setting")
def set_setting(key, value):
    """Change a runtime setting"""
    if key not in Setting.DEFAULTS:
        raise click.BadParameter(f"Unknown setting '{key}'", param_hint="key")
    Setting.set(key, value)
    click.echo(f"{key} = {value}")


@app.cli.command("status")
@handle_cli_errors("Could not read status")
def status():
    """Show settings, grab health and enrichment counts"""
    echo_stats(
        {
            "settings": {k: v["value"] for k, v in Setting.get_all().items()},
            "sites": GrabHealthService.get_site_health(),
            "disabled_channels": GrabHealthService.get_disabled_channels(),
            "enrichment": EnrichmentService.get_stats(),
        }
    )


@app.cli.command("cleanup")
@handle_cli_errors("Guide cleanup failed")
def cleanup():
    """Remove ended programmes and guide data no channel uses"""
    echo_stats(GuideExportService.cleanup_guide_data())


@app.cli.command("export-guide")
@click.argument("xml_path")
@click.option("--playlist", "m3u_path", default=None, help="Also write an M3U playlist here")
@handle_cli_errors("Guide export failed")
def export_guide(xml_path, m3u_path):
    """Write the merged XMLTV guide for the enabled, matched lineup"""
    echo_stats(GuideExportService.export_guide(xml_path, m3u_path=m3u_path))


def full_sync(ctx, sites_dir=None, repo_dir=None, sources=()):
    """
    Run the whole pipeline once.

    Refreshes candidates (when a site directory is given), loads bulk feeds,
    matches the lineup, grabs missing guides, re-confirms matches against the
    grabbed data and finally enriches programmes when enabled.
    """
    result = {}
    if sites_dir:
        result["corpus"] = CorpusService.refresh_from_directory(sites_dir, repo_dir=repo_dir)
    if sources:
        result["ingest"] = XmltvIngestService.ingest_sources(list(sources), ctx)
        result["match_guide"] = ChannelMatchingService.match_guide_channels(ctx)

    ctx.log("Matching channels to grab candidates", phase=PHASE_MATCH)
    result["match_candidates"] = ChannelMatchingService.match_candidates(ctx)

    targets = ChannelMatchingService.get_grab_targets()
    ctx.log(f"{len(targets)} channels need guide data", phase=PHASE_GRAB)
    grab_stats = GrabOrchestrator.grab_channels(targets, ctx)
    result["grab"] = {k: v for k, v in grab_stats.items() if k != "results"}

    if grab_stats["succeeded"]:
        result["match_guide_after_grab"] = ChannelMatchingService.match_guide_channels(ctx)

    if Setting.get_bool("metadata_enrichment_enabled"):
        result["enrich"] = EnrichmentService.run_pass(ctx)
    else:
        ctx.log("Metadata enrichment disabled", phase=PHASE_ENRICH)
    return result


@app.cli.command("full-sync")
@click.option("--sites-dir", default=None, help="Directory of *.channels.xml site files")
@click.option("--repo-dir", default=None, help="Clone or pull the corpus repository here first")
@click.option("--source", "sources", multiple=True, help="Bulk XMLTV feed to load first")
@handle_cli_errors("Full sync failed")
def full_sync_command(sites_dir, repo_dir, sources):
    """Refresh candidates, match, grab and enrich in one run"""
    locations = validate_sources(sources) if sources else []
    result = run_job("full-sync", lambda ctx: full_sync(ctx, sites_dir, repo_dir, locations))
    echo_stats(result)


# ============================================================================
# Application Entry Point
# ============================================================================


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
    logger.info("Database ready; run pipeline steps with: flask --app app <command>")
