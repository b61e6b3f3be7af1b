"""CLI entry point for the mailgate rule engine.

Commands:
    mailgate rules     - list/add/update/remove/toggle filter rules
    mailgate check     - evaluate a message against the rules
    mailgate config    - show or change dynamic detection settings
    mailgate sweep     - expire stale dynamic rules and old tracker rows
    mailgate subjects  - largest subject groups in the detection window
    mailgate status    - rule counts, tracker stats, recent promotions
"""

import asyncio
import logging
import sys

import click

from mailgate.config import (
    AUDIT_LOG_PATH,
    DB_PATH,
    RULE_CACHE_TTL_SECONDS,
    SUBJECT_PREFIXES_PATH,
    SWEEP_INTERVAL_SECONDS,
    TRACKER_RETENTION_MINUTES,
)
from mailgate.errors import MailgateError
from mailgate.schemas.rules import MatchMode, MatchType, RuleCategory

logger = logging.getLogger("mailgate")

_CATEGORIES = [c.value for c in RuleCategory]
_MATCH_TYPES = [t.value for t in MatchType]
_MATCH_MODES = [m.value for m in MatchMode]


def _open_pipeline():
    """Build a pipeline from the configured paths."""
    from mailgate.detector.normalize import load_prefixes
    from mailgate.pipeline import MailFilterPipeline

    try:
        prefixes = load_prefixes(SUBJECT_PREFIXES_PATH)
    except (OSError, ValueError) as exc:
        click.echo(f"Error: Cannot load subject prefixes: {exc}", err=True)
        sys.exit(1)

    return MailFilterPipeline.open(
        DB_PATH,
        AUDIT_LOG_PATH,
        prefixes=prefixes,
        rule_cache_ttl_seconds=RULE_CACHE_TTL_SECONDS,
        tracker_retention_minutes=TRACKER_RETENTION_MINUTES,
    )


def _fail(exc: MailgateError) -> None:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


def _format_rule(rule) -> str:
    state = "on " if rule.enabled else "off"
    scope = rule.scope or "global"
    last_hit = rule.last_hit_at.strftime("%Y-%m-%d %H:%M") if rule.last_hit_at else "never"
    return (
        f"  {rule.id}  [{state}] {rule.category.value:<9} "
        f"{rule.match_type.value:<16} {rule.match_mode.value:<10} {rule.pattern!r}"
        f"  scope={scope} hits={rule.hit_count} last_hit={last_hit}"
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """mailgate - inbound mail filter rules with burst detection."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# mailgate rules
# ------------------------------------------------------------------


@cli.group()
def rules() -> None:
    """Manage filter rules."""


@rules.command("list")
@click.option("--category", type=click.Choice(_CATEGORIES), default=None, help="Only this category.")
@click.option("--scope", default=None, help="Only rules with exactly this scope.")
def rules_list(category: str | None, scope: str | None) -> None:
    """List rules, oldest first."""
    with _open_pipeline() as pipeline:
        found = pipeline.rules.list_rules(
            category=RuleCategory(category) if category else None, scope=scope
        )
    if not found:
        click.echo("No rules.")
        return
    click.echo(f"{len(found)} rule(s):")
    for rule in found:
        click.echo(_format_rule(rule))


@rules.command("add")
@click.argument("category", type=click.Choice(_CATEGORIES))
@click.argument("match_type", type=click.Choice(_MATCH_TYPES))
@click.argument("match_mode", type=click.Choice(_MATCH_MODES))
@click.argument("pattern")
@click.option("--scope", default=None, help="Tenant/worker id (default: global).")
@click.option("--disabled", is_flag=True, help="Create the rule disabled.")
def rules_add(
    category: str, match_type: str, match_mode: str, pattern: str, scope: str | None, disabled: bool
) -> None:
    """Add a rule."""
    from mailgate.schemas.rules import RuleCreate

    data = RuleCreate(
        category=RuleCategory(category),
        match_type=MatchType(match_type),
        match_mode=MatchMode(match_mode),
        pattern=pattern,
        scope=scope,
        enabled=not disabled,
    )
    with _open_pipeline() as pipeline:
        try:
            rule = pipeline.rules.create(data)
        except MailgateError as exc:
            _fail(exc)
    click.echo(f"Created rule {rule.id}")


@rules.command("update")
@click.argument("rule_id")
@click.option("--category", type=click.Choice(_CATEGORIES), default=None)
@click.option("--match-type", type=click.Choice(_MATCH_TYPES), default=None)
@click.option("--match-mode", type=click.Choice(_MATCH_MODES), default=None)
@click.option("--pattern", default=None)
@click.option("--scope", default=None, help="New scope.")
@click.option("--global", "make_global", is_flag=True, help="Make the rule global.")
def rules_update(
    rule_id: str,
    category: str | None,
    match_type: str | None,
    match_mode: str | None,
    pattern: str | None,
    scope: str | None,
    make_global: bool,
) -> None:
    """Change fields of an existing rule."""
    from mailgate.schemas.rules import RuleUpdate

    changes: dict[str, object] = {}
    if category:
        changes["category"] = RuleCategory(category)
    if match_type:
        changes["match_type"] = MatchType(match_type)
    if match_mode:
        changes["match_mode"] = MatchMode(match_mode)
    if pattern is not None:
        changes["pattern"] = pattern
    if make_global:
        changes["scope"] = None
    elif scope is not None:
        changes["scope"] = scope
    if not changes:
        click.echo("Nothing to update.")
        return

    with _open_pipeline() as pipeline:
        try:
            rule = pipeline.rules.update(rule_id, RuleUpdate(**changes))
        except MailgateError as exc:
            _fail(exc)
    click.echo(_format_rule(rule))


@rules.command("remove")
@click.argument("rule_id")
def rules_remove(rule_id: str) -> None:
    """Delete a rule."""
    with _open_pipeline() as pipeline:
        try:
            pipeline.rules.delete(rule_id)
        except MailgateError as exc:
            _fail(exc)
    click.echo(f"Removed rule {rule_id}")


@rules.command("toggle")
@click.argument("rule_id")
def rules_toggle(rule_id: str) -> None:
    """Enable a disabled rule, or disable an enabled one."""
    with _open_pipeline() as pipeline:
        try:
            rule = pipeline.rules.toggle(rule_id)
        except MailgateError as exc:
            _fail(exc)
    click.echo(f"Rule {rule.id} is now {'enabled' if rule.enabled else 'disabled'}")


# ------------------------------------------------------------------
# mailgate check
# ------------------------------------------------------------------


@cli.command()
@click.option("--sender", "-f", required=True, help="Envelope/header sender address.")
@click.option("--to", "recipient", required=True, help="Recipient address.")
@click.option("--subject", "-s", default="", help="Subject line.")
@click.option("--scope", default=None, help="Evaluate scope rules plus global rules.")
@click.option(
    "--track/--no-track",
    default=False,
    show_default=True,
    help="Feed unmatched mail to the burst detector.",
)
def check(sender: str, recipient: str, subject: str, scope: str | None, track: bool) -> None:
    """Evaluate a message and print the decision."""
    from mailgate.schemas.rules import InboundMessage

    message = InboundMessage(
        sender=sender, recipient_address=recipient, subject=subject, scope=scope
    )
    with _open_pipeline() as pipeline:
        decision = pipeline.process(message, track=track)

    click.echo(f"Decision: {decision.action.value.upper()} ({decision.reason.value})")
    if decision.matched_rule is not None:
        click.echo(f"  Rule:   {decision.matched_rule.id} {decision.matched_rule.pattern!r}")
    if decision.dynamic_rule_created is not None:
        click.echo(f"  New dynamic rule: {decision.dynamic_rule_created.id}")
        click.echo(f"  Detection latency: {decision.detection_latency_seconds:.1f}s")
        click.echo(f"  Forwarded before block: {decision.forwarded_before_block}")


# ------------------------------------------------------------------
# mailgate config
# ------------------------------------------------------------------


@cli.group()
def config() -> None:
    """Dynamic detection settings."""


@config.command("show")
def config_show() -> None:
    """Print the current detection settings."""
    with _open_pipeline() as pipeline:
        current = pipeline.config.get()
    click.echo("Dynamic detection")
    click.echo(f"  Enabled:                {current.enabled}")
    click.echo(f"  Time window:            {current.time_window_minutes} min")
    click.echo(f"  Threshold count:        {current.threshold_count}")
    click.echo(f"  Time span threshold:    {current.time_span_threshold_minutes} min")
    click.echo(f"  Expiration (never hit): {current.expiration_hours} h")
    click.echo(f"  Last-hit threshold:     {current.last_hit_threshold_hours} h")


@config.command("set")
@click.option("--enabled/--disabled", default=None, help="Turn detection on or off.")
@click.option("--window", "time_window_minutes", type=int, default=None, help="Window in minutes.")
@click.option("--threshold", "threshold_count", type=int, default=None, help="Messages per burst.")
@click.option(
    "--span", "time_span_threshold_minutes", type=float, default=None, help="Max burst span in minutes."
)
@click.option("--expiration", "expiration_hours", type=int, default=None, help="Hours before an unhit rule expires.")
@click.option("--last-hit", "last_hit_threshold_hours", type=int, default=None, help="Hours since last hit before expiry.")
def config_set(**options: object) -> None:
    """Change detection settings; unspecified settings are kept."""
    changes = {k: v for k, v in options.items() if v is not None}
    if not changes:
        click.echo("Nothing to change.")
        return
    with _open_pipeline() as pipeline:
        try:
            updated = pipeline.config.set(**changes)
        except MailgateError as exc:
            _fail(exc)
    click.echo(f"Updated: {updated.model_dump()}")


# ------------------------------------------------------------------
# mailgate sweep
# ------------------------------------------------------------------


@cli.command()
@click.option("--once", is_flag=True, help="Run a single sweep and exit.")
@click.option(
    "--interval",
    type=int,
    default=SWEEP_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between sweeps.",
)
def sweep(once: bool, interval: int) -> None:
    """Expire stale dynamic rules and prune the subject tracker."""
    with _open_pipeline() as pipeline:
        if once:
            report = pipeline.sweeper.sweep()
            if report.skipped_rules:
                click.echo("Detection disabled; rule expiry skipped.")
            click.echo(
                f"Deleted {len(report.deleted_rule_ids)} rule(s), "
                f"{len(report.failed_rule_ids)} failed, "
                f"{report.tracker_rows_deleted} tracker row(s) removed."
            )
            return

        click.echo(f"Sweeping every {interval}s (Ctrl+C to stop)…")
        try:
            asyncio.run(pipeline.sweeper.run(interval))
        except KeyboardInterrupt:
            click.echo("Stopped.")


# ------------------------------------------------------------------
# mailgate subjects
# ------------------------------------------------------------------


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Max rows to show.")
@click.option("--minutes", type=int, default=None, help="Look-back (default: detection window).")
@click.option("--subject", default=None, help="Show raw arrivals for this subject's group.")
def subjects(limit: int, minutes: int | None, subject: str | None) -> None:
    """Show the largest subject groups in the detection window."""
    from datetime import UTC, datetime, timedelta

    from mailgate.detector.normalize import hash_subject

    with _open_pipeline() as pipeline:
        window = minutes or pipeline.config.get().time_window_minutes
        since = datetime.now(UTC) - timedelta(minutes=window)
        if subject is not None:
            subject_hash = hash_subject(subject, pipeline.prefixes)
            entries = pipeline.store.tracker_entries(subject_hash, since, limit)
        else:
            counts = pipeline.store.subject_counts(since, limit)

    if subject is not None:
        click.echo(f"Group {subject_hash}: {len(entries)} arrival(s) in the last {window} min")
        for e in entries:
            click.echo(f"  {e.received_at.strftime('%Y-%m-%d %H:%M:%S')}  {e.subject}")
        return

    if not counts:
        click.echo(f"No subjects tracked in the last {window} min.")
        return
    click.echo(f"Top subjects (last {window} min):")
    for c in counts:
        click.echo(f"  {c.count:>6}  {c.subject_hash}  {c.subject}")


# ------------------------------------------------------------------
# mailgate status
# ------------------------------------------------------------------


@cli.command()
def status() -> None:
    """Quick overview of rules, tracker, and recent promotions."""
    from datetime import UTC, datetime, timedelta

    from mailgate.audit.logger import DetectionAuditLog

    audit_log = DetectionAuditLog(AUDIT_LOG_PATH)
    with _open_pipeline() as pipeline:
        counts = {c: pipeline.store.count_rules(c) for c in RuleCategory}
        tracker = pipeline.store.tracker_stats()
        enabled = pipeline.config.get().enabled

    since = datetime.now(UTC) - timedelta(hours=24)
    created = audit_log.read_entries(since=since, event="rule_created")
    sweeps = audit_log.read_entries(since=since, event="sweep")
    expired = sum(len(e.deleted_rule_ids) for e in sweeps)

    click.echo("Mailgate Status")
    click.echo(f"  Whitelist rules:      {counts[RuleCategory.WHITELIST]}")
    click.echo(f"  Blacklist rules:      {counts[RuleCategory.BLACKLIST]}")
    click.echo(f"  Dynamic rules:        {counts[RuleCategory.DYNAMIC]}")
    click.echo(f"  Detection enabled:    {enabled}")
    click.echo(f"  Tracked subjects:     {tracker.total_records}")
    click.echo(f"  Promotions (24h):     {len(created)}")
    click.echo(f"  Expired rules (24h):  {expired}")
