"""CLI entry point for autopilot."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import httpx

from autopilot.config.settings import AutomationSettings, EndpointConfig
from autopilot.engine.orchestrator import COLLABORATORS, WorkflowOrchestrator
from autopilot.enums import WorkflowState
from autopilot.exceptions import AutopilotError, ConfigurationError, NetworkError
from autopilot.models.domain import WorkflowResult
from autopilot.providers.http import HttpAnalyzer, HttpPublisher, HttpResolver, HttpReviewer
from autopilot.utils.logging_config import configure_logging, get_logger
from autopilot.utils.retry import async_retry

log = get_logger(__name__)

EXIT_HUMAN_REVIEW = 2


@click.group()
@click.option("--config", default="autopilot.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """autopilot: Issue-to-change-request workflow orchestrator."""
    configure_logging(log_level)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = AutomationSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--issue", type=int, required=True, help="Issue number to process")
@click.option("--title", required=True, help="Issue title")
@click.option("--body", default="", help="Issue body")
@click.pass_context
def process_issue(ctx: click.Context, issue: int, title: str, body: str) -> None:
    """Run the full pipeline for a single issue.

    Exits 0 when the change request was published, 2 when the issue was
    escalated to a human and 1 when the run failed.
    """
    try:
        settings = ctx.obj["settings"]
        result = asyncio.run(_process_single_issue(settings, issue, title, body))
    except AutopilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("process_issue_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("process_issue_unexpected", exc_info=True)
        sys.exit(1)

    click.echo(json.dumps(result.to_dict(), indent=2))
    if result.success:
        return
    if result.final_state == WorkflowState.REQUIRES_HUMAN_REVIEW:
        sys.exit(EXIT_HUMAN_REVIEW)
    sys.exit(1)


@cli.command()
@click.pass_context
def health_check(ctx: click.Context) -> None:
    """Check that every configured collaborator endpoint is reachable."""
    try:
        settings = ctx.obj["settings"]
        report = asyncio.run(_check_endpoints(settings))
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)

    click.echo(json.dumps(report, indent=2))
    if any(entry["status"] in ("error", "unreachable") for entry in report.values()):
        sys.exit(1)


def _require_endpoint(settings: AutomationSettings, name: str) -> EndpointConfig:
    endpoint = settings.collaborator(name).endpoint
    if endpoint is None:
        raise ConfigurationError(f"No endpoint configured for {name}")
    return endpoint


async def _process_single_issue(
    settings: AutomationSettings, issue_number: int, title: str, body: str
) -> WorkflowResult:
    """Build HTTP collaborators and run one issue through the orchestrator."""
    analyzer = HttpAnalyzer(_require_endpoint(settings, "analyzer"))
    resolver = HttpResolver(_require_endpoint(settings, "resolver"))
    reviewer = HttpReviewer(_require_endpoint(settings, "reviewer"))
    publisher = HttpPublisher(_require_endpoint(settings, "publisher"))

    try:
        async with WorkflowOrchestrator(settings, analyzer, resolver, reviewer, publisher) as orchestrator:
            return await orchestrator.process_issue(issue_number, title, body)
    finally:
        for collaborator in (analyzer, resolver, reviewer, publisher):
            await collaborator.aclose()


async def _check_endpoints(
    settings: AutomationSettings, transport: httpx.AsyncBaseTransport | None = None
) -> dict[str, dict[str, Any]]:
    """Probe ``GET <base_url>/health`` for every configured collaborator."""

    @async_retry(max_attempts=3, base_delay=0.5, max_delay=2.0)
    async def probe(client: httpx.AsyncClient, url: str) -> int:
        try:
            response = await client.get(url)
        except httpx.TransportError as e:
            raise NetworkError(f"Cannot reach {url}: {e}") from e
        return response.status_code

    report: dict[str, dict[str, Any]] = {}
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        for name in COLLABORATORS:
            endpoint = settings.collaborator(name).endpoint
            if endpoint is None:
                report[name] = {"status": "not_configured"}
                continue
            url = f"{str(endpoint.base_url).rstrip('/')}/health"
            try:
                status_code = await probe(client, url)
            except NetworkError as e:
                log.warning("health_check_failed", collaborator=name, error=e.message)
                report[name] = {"status": "unreachable", "url": url, "error": e.message}
                continue
            report[name] = {
                "status": "ok" if status_code < 400 else "error",
                "url": url,
                "http_status": status_code,
            }
    return report


if __name__ == "__main__":
    cli()
