# Overview: Flask CLI command groups for bootstrap, inspection, and audit export.

# backend/tabbilling/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to tabbilling (PowerShell: $env:FLASK_APP="tabbilling").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Tab inspection:
# - python -m flask tabs voided --org-id acme [--limit 20]
#   List voided tabs, newest void first.
# - python -m flask tabs void-check <tab_id> --org-id acme
#   Show void blockers and warnings without changing anything.
#
# Audit:
# - python -m flask audit export --org-id acme [--entity-type tab] [--action voided] [--output audit.csv]
#   Export the audit trail as CSV (stdout when --output is omitted).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models.audit import AUDIT_ACTIONS, ENTITY_TYPES
from .services import audit_service, voiding_service
from .validation import ConflictError, NotFoundError
from .time_utils import format_cents


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401

    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the audit trail!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('tabs')
def tabs_group():
    """Tab inspection commands."""


@tabs_group.command('voided')
@click.option('--org-id', required=True, help='Organization to list')
@click.option('--limit', type=int, default=20, help='Max tabs to show')
@with_appcontext
def list_voided_cli(org_id, limit):
    """
    List voided tabs.

    Example:
        flask tabs voided --org-id acme
    """
    result = voiding_service.list_voided_tabs(org_id, limit=limit)

    if not result["tabs"]:
        click.echo("No voided tabs found.")
        return

    click.echo("\n" + "="*110)
    click.echo(f"{'Tab':<38} {'Voided At':<22} {'By':<15} {'Was':<8} {'Total':>12}  {'Reason'}")
    click.echo("="*110)

    for tab in result["tabs"]:
        record = tab.get("void") or {}
        reason = (record.get("void_reason") or "-")[:30]
        click.echo(
            f"{tab['id']:<38} {str(record.get('voided_at') or '-'):<22} {str(record.get('voided_by') or '-'):<15} "
            f"{str(record.get('previous_status') or '-'):<8} {format_cents(tab['total_cents']):>12}  {reason}"
        )

    click.echo(f"\n{result['total_count']} voided tab(s)")


@tabs_group.command('void-check')
@click.argument('tab_id')
@click.option('--org-id', required=True, help='Organization owning the tab')
@with_appcontext
def void_check_cli(tab_id, org_id):
    """
    Show whether a tab can be voided.

    Example:
        flask tabs void-check 6f1c... --org-id acme
    """
    try:
        check = voiding_service.validate_voiding(tab_id, org_id)
    except (NotFoundError, ConflictError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Tab {tab_id}: {'CAN VOID' if check.can_void else 'BLOCKED'}")
    for blocker in check.blockers:
        click.echo(f"  BLOCKER [{blocker.category}] {blocker.message}")
    for warning in check.warnings:
        click.echo(f"  WARNING [{warning.category}] {warning.message}")


@click.group('audit')
def audit_group():
    """Audit trail commands."""


@audit_group.command('export')
@click.option('--org-id', required=True, help='Organization to export')
@click.option('--entity-type', type=click.Choice(ENTITY_TYPES), help='Filter by entity type')
@click.option('--entity-id', help='Filter by entity id')
@click.option('--action', type=click.Choice(AUDIT_ACTIONS), help='Filter by action')
@click.option('--actor-id', help='Filter by actor')
@click.option('--output', type=click.Path(dir_okay=False, writable=True), help='Write CSV to this file')
@with_appcontext
def export_audit_cli(org_id, entity_type, entity_id, action, actor_id, output):
    """
    Export the audit trail as CSV.

    Example:
        flask audit export --org-id acme --action voided --output voids.csv
    """
    csv_text = audit_service.export_audit_trail(
        org_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
    )

    if not output:
        click.echo(csv_text, nl=False)
        return

    with open(output, "w", encoding="utf-8", newline="") as fh:
        fh.write(csv_text)
    click.echo(f"PASS Wrote audit trail to {output}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tabs_group)
    app.cli.add_command(audit_group)
