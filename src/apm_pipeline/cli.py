"""CLI for apm-pipeline.

Usage:
    apm-pipeline classify "Failed to execute 'put' on 'Cache'"
    apm-pipeline replay host.log --user-id dev
    apm-pipeline db init
    apm-pipeline alert test
    apm-pipeline alert send "Deploy finished" --ping
"""

import asyncio
import logging
from pathlib import Path

import click

from apm_pipeline.alerter import AlertMessage, DiscordClient, FilterLevel, is_error_line
from apm_pipeline.config import Config
from apm_pipeline.errors import ConfigError
from apm_pipeline.intercept import LoggerSink
from apm_pipeline.logging import configure_logging
from apm_pipeline.pipeline import TelemetryPipeline
from apm_pipeline.store import InMemoryStore, PostgresStore, TelemetryStore


LEVEL_CHOICE = click.Choice([level.value for level in FilterLevel])


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=Path.home() / ".apm" / "pipeline.yaml",
    help="Config file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path, verbose: bool) -> None:
    """Client-side APM pipeline utilities."""
    configure_logging(level="DEBUG" if verbose else "WARNING", json_output=False)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = Config.from_file(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj["verbose"] = verbose


# --- Classification ---


@main.command("classify")
@click.argument("text")
@click.option("--level", type=LEVEL_CHOICE, help="Filter level (default: from config)")
@click.pass_context
def classify_cmd(ctx: click.Context, text: str, level: str | None) -> None:
    """Show how a line of diagnostic text would be classified."""
    config: Config = ctx.obj["config"]
    classifier = config.rules.build_classifier(FilterLevel(level or config.filter_level))
    result = classifier.classify(text)

    click.echo(f"Category: {result.category.value}")
    click.echo(f"Filtered: {'yes' if result.is_filtered else 'no'}")
    if result.pattern_tag:
        click.echo(f"Pattern:  {result.pattern_tag}")
    hint = result.severity_hint.value if result.severity_hint else "-"
    click.echo(f"Severity: {hint}")


@main.command("replay")
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user-id", default="replay", help="User id for the replay session")
@click.option("--level", type=LEVEL_CHOICE, help="Filter level (default: from config)")
@click.option("--persist", is_flag=True, help="Write to the configured Postgres store")
@click.option("--notify", is_flag=True, help="Send critical alerts to Discord")
@click.pass_context
def replay_cmd(
    ctx: click.Context,
    log_file: Path,
    user_id: str,
    level: str | None,
    persist: bool,
    notify: bool,
) -> None:
    """Feed a log file through the pipeline and summarize the outcome.

    Lines that look like errors go to the error channel, lines mentioning
    warnings to the warning channel, everything else to info.
    """
    config: Config = ctx.obj["config"]
    if level:
        config.filter_level = FilterLevel(level)
    if not notify:
        config.discord_webhook_url = None

    store: TelemetryStore
    if persist:
        if config.postgres is None:
            raise click.ClickException("--persist needs POSTGRES_HOST or a postgres config section")
        store = PostgresStore.connect(config.postgres.dsn)
    else:
        store = InMemoryStore()

    lines = [line for line in log_file.read_text().splitlines() if line.strip()]
    stats = asyncio.run(_replay(config, store, user_id, lines))

    click.echo(f"Replayed {len(lines)} lines from {log_file}")
    click.echo(f"  Session: {stats['session_id']}")
    click.echo(f"  Genuine errors: {stats['total_errors']}")
    click.echo(f"  Alerts: {stats['alerts']}")
    click.echo(f"  Suppressed duplicates: {stats['dedup']['suppressed']}")
    if isinstance(store, InMemoryStore):
        filtered = sum(1 for row in store.rows["errors"] if row["is_filtered"])
        click.echo(f"  Filtered errors: {filtered}")
        click.echo("")
        click.echo(f"{'Table':<10} {'Rows':>8}")
        click.echo("-" * 20)
        for table, count in store.counts().items():
            click.echo(f"{table:<10} {count:>8}")
    else:
        store.close()


async def _replay(
    config: Config, store: TelemetryStore, user_id: str, lines: list[str]
) -> dict:
    # Replayed text is recorded, not echoed
    quiet = logging.getLogger("apm_replay.host")
    quiet.propagate = False
    quiet.addHandler(logging.NullHandler())

    pipeline = TelemetryPipeline(config, store=store, sink=LoggerSink(quiet))
    await pipeline.start()
    pipeline.set_user_id(user_id)

    def feed(line: str) -> None:
        if is_error_line(line):
            pipeline.sink.error(line)
        elif "warn" in line.lower():
            pipeline.sink.warning(line)
        else:
            pipeline.sink.info(line)

    await pipeline.scheduler.process_batches(lines, feed, batch_size=50)
    stats = pipeline.stats()
    await pipeline.shutdown()
    return stats


# --- Database Commands ---


@main.group()
def db() -> None:
    """Telemetry database operations."""
    pass


@db.command("init")
@click.pass_context
def db_init(ctx: click.Context) -> None:
    """Create the APM tables in Postgres."""
    config: Config = ctx.obj["config"]
    if config.postgres is None:
        click.echo("Error: POSTGRES_HOST not set and no postgres section in config")
        raise SystemExit(1)

    store = PostgresStore.connect(config.postgres.dsn)
    store.close()
    click.echo(f"APM tables ready in {config.postgres.database}@{config.postgres.host}")


# --- Alert Commands ---


@main.group()
def alert() -> None:
    """Discord alert channel."""
    pass


@alert.command("test")
@click.pass_context
def alert_test(ctx: click.Context) -> None:
    """Send a test alert to verify the Discord webhook."""
    config: Config = ctx.obj["config"]
    message = AlertMessage(
        alert_type="performance",
        title="Test Alert",
        description="apm-pipeline alert channel is working.",
        severity="info",
        metric_value=0,
        threshold_value=0,
    )
    client = DiscordClient(get_webhook_url(config), ping_critical=config.ping_critical)
    if asyncio.run(_send_and_close(client, client.send_alert(message))):
        click.echo("Test alert sent successfully!")
    else:
        click.echo("Failed to send test alert")
        raise SystemExit(1)


@alert.command("send")
@click.argument("message")
@click.option("--ping", is_flag=True, help="Include @here ping")
@click.pass_context
def alert_send(ctx: click.Context, message: str, ping: bool) -> None:
    """Send a custom message to Discord."""
    client = DiscordClient(get_webhook_url(ctx.obj["config"]))
    if asyncio.run(_send_and_close(client, client.send(message, ping=ping))):
        click.echo("Message sent!")
    else:
        click.echo("Failed to send message")
        raise SystemExit(1)


async def _send_and_close(client: DiscordClient, send) -> bool:
    try:
        return await send
    finally:
        await client.close()


# --- Utility Functions ---


def get_webhook_url(config: Config) -> str:
    """Get the Discord webhook URL from config or exit with error."""
    if not config.discord_webhook_url:
        click.echo("Error: DISCORD_WEBHOOK_URL not set and no notifications section in config")
        raise SystemExit(1)
    return config.discord_webhook_url


if __name__ == "__main__":
    main()
