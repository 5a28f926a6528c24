"""Command line interface for validating resources and managing the cache.

Usage:
    fhir-validate validate patient.json --aspect structural
    fhir-validate cache warm --cache-dir ./cache/validation
    fhir-validate cache stats --cache-dir ./cache/validation
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from .caching.cache_manager import ValidationCacheManager
from .config.settings import CacheSettings, _deep_update, get_settings
from .models.cache import CacheCategory, CacheStats, WarmupReport
from .models.settings import ValidationSettings
from .models.validation import ValidationRequest, ValidationResult
from .utils.logging import configure_logging, configure_tracing
from .validation.batch import BatchCoordinator
from .validation.engine import ValidationEngine
from .validation.events import ValidationEventBus
from .validation.settings_provider import StaticSettingsProvider

app = typer.Typer(help="FHIR validation engine and cache tooling")
cache_app = typer.Typer(help="Manage the three-tier validation cache")
app.add_typer(cache_app, name="cache")

console = Console()
err_console = Console(stderr=True)

DEFAULT_CLI_ASPECTS = ("structural", "metadata")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level (stderr)"),
    trace: bool = typer.Option(False, "--trace", help="Export OpenTelemetry spans"),
) -> None:
    """FHIR validation engine and cache tooling."""
    settings = get_settings()
    logging_settings = settings.observability.logging.model_copy(update={"level": log_level})
    configure_logging(settings=logging_settings, stream=sys.stderr)
    if trace:
        configure_tracing(settings.service_name, settings.telemetry)


# ==============================================================================
# HELPERS
# ==============================================================================


def _cache_settings(cache_dir: Path | None) -> CacheSettings:
    base = get_settings().cache
    if cache_dir is None:
        return base
    merged = _deep_update(
        base.model_dump(),
        {"layers": {"filesystem": True}, "filesystem_path": cache_dir},
    )
    return CacheSettings.model_validate(merged)


def _load_resources(path: Path) -> list[dict[str, Any]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        err_console.print(f"❌ Unable to read {path}: {exc}", style="red")
        raise typer.Exit(code=2) from exc
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict) and payload.get("resourceType") == "Bundle":
        return [
            entry["resource"]
            for entry in payload.get("entry", [])
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
        ]
    if isinstance(payload, dict):
        return [payload]
    err_console.print(f"❌ {path} does not contain a FHIR resource", style="red")
    raise typer.Exit(code=2)


def _results_table(results: list[tuple[str, ValidationResult]]) -> Table:
    table = Table(title="Validation Results")
    table.add_column("Source", style="cyan")
    table.add_column("Resource")
    table.add_column("Valid")
    table.add_column("Errors", justify="right")
    table.add_column("Warnings", justify="right")
    table.add_column("Executed")
    for source, result in results:
        table.add_row(
            source,
            f"{result.resource_type}/{result.resource_id or '-'}",
            "✅" if result.is_valid else "❌",
            str(result.error_count),
            str(result.warning_count),
            ", ".join(aspect.value for aspect in result.executed_aspects) or "-",
        )
    return table


def _stats_table(stats: CacheStats) -> Table:
    table = Table(title="Cache Statistics")
    table.add_column("Layer", style="cyan")
    table.add_column("Enabled")
    table.add_column("Entries", justify="right")
    table.add_column("Size (bytes)", justify="right")
    table.add_column("Hits", justify="right")
    table.add_column("Misses", justify="right")
    table.add_column("Hit rate", justify="right")
    for name, layer in stats.layers.items():
        table.add_row(
            name.value,
            "yes" if layer.enabled else "no",
            str(layer.entries),
            str(layer.size_bytes),
            str(layer.hits),
            str(layer.misses),
            f"{layer.hit_rate:.2f}",
        )
    overall = stats.overall
    table.add_row(
        "overall",
        "",
        str(overall.total_entries),
        str(overall.total_size_bytes),
        str(overall.total_hits),
        str(overall.total_misses),
        f"{overall.hit_rate:.2f}",
        style="bold",
    )
    return table


# ==============================================================================
# COMMANDS
# ==============================================================================


@app.command()
def validate(
    paths: list[Path] = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    aspect: list[str] = typer.Option([], "--aspect", "-a", help="Only run these aspects"),
    enable: list[str] = typer.Option(
        [], "--enable", help="Aspects enabled in settings (default: structural, metadata)"
    ),
    profile: str | None = typer.Option(None, "--profile", help="Profile URL to validate against"),
    sequential: bool = typer.Option(False, "--sequential", help="Run aspects one at a time"),
    max_concurrent: int | None = typer.Option(
        None, "--max-concurrent", min=1, help="Resources validated concurrently per chunk"
    ),
    cache_dir: Path | None = typer.Option(
        None, "--cache-dir", help="Enable the filesystem cache tier at this directory"
    ),
    output_json: bool = typer.Option(False, "--json", help="Emit results as JSON"),
) -> None:
    """Validate FHIR resources stored in JSON files (resources, arrays or Bundles)."""
    settings = get_settings()
    validation_settings = ValidationSettings.only(enable or DEFAULT_CLI_ASPECTS)
    sources: list[str] = []
    requests: list[ValidationRequest] = []
    for path in paths:
        for index, resource in enumerate(_load_resources(path)):
            sources.append(f"{path.name}#{index}")
            requests.append(
                ValidationRequest(
                    resource=resource,
                    profile_url=profile,
                    requested_aspects=aspect or None,
                )
            )

    async def _run() -> list[ValidationResult]:
        cache = ValidationCacheManager(_cache_settings(cache_dir))
        engine = ValidationEngine(
            settings_provider=StaticSettingsProvider(validation_settings),
            cache=cache,
            settings=settings.engine.model_copy(update={"parallel": not sequential}),
            events=ValidationEventBus(default_maxsize=settings.batch.event_queue_size),
        )
        coordinator = BatchCoordinator(engine, settings=settings.batch)
        try:
            summary = await coordinator.validate_batch(requests, max_concurrent=max_concurrent)
        finally:
            await cache.close()
        return [
            result
            if result is not None
            else engine.aborted_result(request, RuntimeError(summary.errors[index]))
            for index, (request, result) in enumerate(zip(requests, summary.results))
        ]

    results = asyncio.run(_run())
    if output_json:
        typer.echo(json.dumps([result.model_dump(mode="json") for result in results], indent=2))
    else:
        console.print(_results_table(list(zip(sources, results))))
    if not all(result.is_valid for result in results):
        raise typer.Exit(code=1)


@cache_app.command("stats")
def cache_stats(
    cache_dir: Path | None = typer.Option(None, "--cache-dir", help="Filesystem tier directory"),
    output_json: bool = typer.Option(False, "--json", help="Emit statistics as JSON"),
) -> None:
    """Display per-layer cache statistics."""

    async def _run() -> CacheStats:
        manager = ValidationCacheManager(_cache_settings(cache_dir))
        try:
            return await manager.get_stats()
        finally:
            await manager.close()

    stats = asyncio.run(_run())
    if output_json:
        typer.echo(stats.model_dump_json(indent=2))
    else:
        console.print(_stats_table(stats))


@cache_app.command("warm")
def cache_warm(
    cache_dir: Path | None = typer.Option(None, "--cache-dir", help="Filesystem tier directory"),
    category: list[CacheCategory] = typer.Option(
        [], "--category", help="Categories to warm (profile, terminology)"
    ),
    profile: list[str] = typer.Option([], "--profile", help="Profile URLs to warm"),
    system: list[str] = typer.Option([], "--system", help="Terminology systems to warm"),
) -> None:
    """Pre-populate profiles and terminology systems."""

    async def _run() -> WarmupReport:
        manager = ValidationCacheManager(_cache_settings(cache_dir))
        try:
            return await manager.warm_cache(
                profiles=profile or None,
                terminology_systems=system or None,
                categories=category or None,
            )
        finally:
            await manager.close()

    report = asyncio.run(_run())
    console.print(
        f"🔥 Warmed {report.total_warmed} entries "
        f"({report.profiles_warmed} profiles, {report.terminology_warmed} terminology systems)",
        style="green",
    )
    for error in report.errors:
        err_console.print(f"⚠️  {error}", style="yellow")


@cache_app.command("cleanup")
def cache_cleanup(
    cache_dir: Path | None = typer.Option(None, "--cache-dir", help="Filesystem tier directory"),
) -> None:
    """Remove expired entries from every enabled layer."""

    async def _run() -> int:
        manager = ValidationCacheManager(_cache_settings(cache_dir))
        try:
            return await manager.cleanup_expired()
        finally:
            await manager.close()

    removed = asyncio.run(_run())
    console.print(f"🧹 Removed {removed} expired entries", style="green")


@cache_app.command("clear")
def cache_clear(
    cache_dir: Path | None = typer.Option(None, "--cache-dir", help="Filesystem tier directory"),
    confirm: bool = typer.Option(False, "--confirm", help="Skip confirmation prompt"),
) -> None:
    """Clear all cache entries."""
    if not confirm:
        console.print("⚠️  This will clear ALL cache entries.", style="yellow")
        if not typer.confirm("Are you sure you want to continue?"):
            console.print("Operation cancelled.", style="yellow")
            raise typer.Exit(code=0)

    async def _run() -> int:
        manager = ValidationCacheManager(_cache_settings(cache_dir))
        try:
            return await manager.clear()
        finally:
            await manager.close()

    removed = asyncio.run(_run())
    console.print(f"✅ Cache cleared ({removed} entries removed)", style="green")


if __name__ == "__main__":
    app()
