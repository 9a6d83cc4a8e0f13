"""CLI commands using Click framework."""

import json
import logging
import sys

import click

from schemaflow.application.dtos.versioning_dto import CreateVersionRequest, DeploymentRequest
from schemaflow.domain.exceptions import SchemaFlowError
from schemaflow.infrastructure.config import Settings
from schemaflow.infrastructure.di_container import DIContainer


def _configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def _write_json(data, output):
    if output:
        with open(output, 'w') as f:
            json.dump(data, f, indent=2)
        click.echo(f"💾 Saved to: {output}")
    else:
        click.echo(json.dumps(data, indent=2))


def _echo_changes(changes):
    for i, change in enumerate(changes, 1):
        icon = "⚠️" if change.breaking else "✓"
        click.echo(f"   {icon} {i}. {change.kind.value}/{change.operation.value}: {change.target}")


@click.group()
@click.version_option(version="1.0.0")
@click.option('--target-dsn', envvar='SCHEMAFLOW_TARGET_DSN', help='Target database connection string')
@click.option('--metadata-dsn', envvar='SCHEMAFLOW_METADATA_DSN', help='Metadata database connection string')
@click.option('--project-dsn', 'project_dsns', multiple=True, metavar='PROJECT=DSN',
              help='Target database for one project (repeatable)')
@click.option('--log-level', default=None, help='Logging level (default from SCHEMAFLOW_LOG_LEVEL)')
@click.pass_context
def cli(ctx, target_dsn, metadata_dsn, project_dsns, log_level):
    """SchemaFlow - schema versioning and safe deployment."""
    try:
        settings = Settings.from_env()
    except SchemaFlowError as e:
        raise click.UsageError(e.message)
    if log_level:
        settings.log_level = log_level
    _configure_logging(settings.log_level)

    container = DIContainer(settings)
    container.configure(target_dsn=target_dsn, metadata_dsn=metadata_dsn)
    for entry in project_dsns:
        project_id, sep, dsn = entry.partition('=')
        if not sep or not project_id or not dsn:
            raise click.BadParameter(f"expected PROJECT=DSN, got '{entry}'", param_hint='--project-dsn')
        container.register_target(project_id, dsn)
    ctx.obj = container


@cli.command()
@click.argument('old_schema', type=click.Path(exists=True))
@click.argument('new_schema', type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(), help='Write the migration plan as JSON')
@click.pass_obj
def diff(container, old_schema, new_schema, output):
    """Diff two schema documents and print the migration."""
    documents = container.get_schema_document_repository()
    try:
        old = documents.load_file(old_schema)
        new = documents.load_file(new_schema)
        plan = container.get_version_store().build_plan(old, new)
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()

    click.echo(f"📊 {len(plan.changes)} changes, breaking: {plan.breaking}, "
               f"estimated downtime: {plan.estimated_downtime_seconds}s")
    _echo_changes(plan.changes)
    for warning in plan.warnings:
        click.echo(f"   ⚠️  {warning}")
    if output:
        _write_json(plan.to_dict(), output)
    else:
        click.echo("\n-- forward")
        click.echo(plan.forward_sql)
        click.echo("\n-- reverse")
        click.echo(plan.reverse_sql)


@cli.group()
def version():
    """Manage schema versions."""
    pass


@version.command('create')
@click.option('--project', '-p', required=True, help='Project id')
@click.option('--schema', '-s', 'schema_path', required=True, type=click.Path(exists=True),
              help='Path to schema JSON file')
@click.option('--author', '-a', default=None, help='Author id')
@click.option('--source-sql', type=click.Path(exists=True), help='SQL the schema was authored from')
@click.pass_obj
def version_create(container, project, schema_path, author, source_sql):
    """Store a schema document as the project's next version."""
    try:
        schema = container.get_schema_document_repository().load_file(schema_path)
        sql = None
        if source_sql:
            with open(source_sql, 'r') as f:
                sql = f.read()
        created = container.get_version_store().execute(
            CreateVersionRequest(project_id=project, schema=schema, author_id=author, source_sql=sql)
        )
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()

    click.echo(f"✅ {project} at version {created.version} (checksum {created.checksum[:12]})")
    if created.changes:
        _echo_changes(created.changes)


@version.command('history')
@click.option('--project', '-p', required=True, help='Project id')
@click.option('--limit', '-n', default=50, show_default=True)
@click.pass_obj
def version_history(container, project, limit):
    """List versions, newest first."""
    try:
        versions = container.get_version_store().get_version_history(project, limit=limit)
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()

    if not versions:
        click.echo(f"No versions for {project}")
    for v in versions:
        flag = " (breaking)" if v.breaking else ""
        created = v.created_at.isoformat() if v.created_at else "-"
        click.echo(f"   {v.version}  {created}  {v.created_by or '-'}  "
                   f"{len(v.changes)} changes{flag}")


@version.command('compare')
@click.option('--project', '-p', required=True, help='Project id')
@click.argument('from_version')
@click.argument('to_version')
@click.option('--output', '-o', type=click.Path(), help='Write the plan as JSON')
@click.pass_obj
def version_compare(container, project, from_version, to_version, output):
    """Show the migration between two stored versions."""
    try:
        plan = container.get_version_store().compare_versions(project, from_version, to_version)
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()
    _write_json(plan.to_dict(), output)


@cli.command()
@click.option('--project', '-p', required=True, help='Project id')
@click.option('--sql', 'sql_path', type=click.Path(exists=True), help='Forward SQL file to apply')
@click.option('--version', '-v', 'version_name', help='Stored version to deploy')
@click.option('--transaction/--no-transaction', default=None,
              help='Wrap statements in a transaction (default from settings)')
@click.pass_obj
def deploy(container, project, sql_path, version_name, transaction):
    """Deploy forward SQL or a stored version to the project's database."""
    if bool(sql_path) == bool(version_name):
        raise click.UsageError("Pass exactly one of --sql or --version")

    orchestrator = container.get_orchestrator()
    try:
        if sql_path:
            with open(sql_path, 'r') as f:
                forward_sql = f.read()
            if transaction is None:
                transaction = container.settings.transactional
            result = orchestrator.process(DeploymentRequest(
                project_id=project, forward_sql=forward_sql, transactional=transaction
            ))
        else:
            result = orchestrator.deploy_version(project, version_name)
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()

    click.echo(f"Deployment: {result.deployment_id}")
    click.echo(f"   Status: {result.status.value}")
    click.echo(f"   Statements executed: {result.statements_executed}")
    if result.rolled_back:
        click.echo("   ↩️  Rolled back to the pre-deployment schema")
    if result.success:
        click.echo("✅ Deployment complete")
    else:
        click.echo(f"❌ {result.error_kind}: {result.error_message}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('deployment_id')
@click.pass_obj
def restore(container, deployment_id):
    """Restore the structure captured before a deployment (manual recovery)."""
    try:
        result = container.get_orchestrator().restore_backup(deployment_id)
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()

    click.echo(f"Restore deployment: {result.deployment_id}")
    click.echo(f"   From backup: {result.details.get('backup_id', '-')}")
    click.echo(f"   Statements executed: {result.statements_executed}")
    if result.success:
        click.echo("✅ Schema restored")
    else:
        click.echo(f"❌ {result.error_kind}: {result.error_message}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--connection', '-c', default=None, help='Database connection string (default: target DSN)')
@click.option('--output', '-o', type=click.Path(), help='Output file for schema dump')
@click.pass_obj
def introspect(container, connection, output):
    """Introspect current database schema."""
    click.echo("🔍 Introspecting database...", err=True)
    try:
        schema = container.get_inspector(connection).introspect_schema()
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()
    _write_json(schema.to_dict(), output)
    click.echo(f"   Tables: {len(schema.tables)} (checksum {schema.checksum[:12]})", err=True)


@cli.command()
@click.argument('deployment_id', required=False)
@click.option('--project', '-p', help='Show deployment history for a project instead')
@click.option('--limit', '-n', default=10, show_default=True)
@click.pass_obj
def status(container, deployment_id, project, limit):
    """Show a deployment, or a project's recent deployments."""
    if bool(deployment_id) == bool(project):
        raise click.UsageError("Pass a deployment id or --project")

    orchestrator = container.get_orchestrator()
    try:
        if deployment_id:
            _write_json(orchestrator.get_deployment_status(deployment_id).to_dict(), None)
            return
        records = orchestrator.get_deployment_history(project, limit=limit)
    except SchemaFlowError as e:
        click.echo(f"❌ {e.kind}: {e.message}", err=True)
        raise click.Abort()

    click.echo(f"Current version: {orchestrator.get_current_version(project) or '-'}")
    for record in records:
        started = record.started_at.isoformat() if record.started_at else "-"
        suffix = " (rolled back)" if record.rolled_back else ""
        click.echo(f"   {record.id}  {started}  {record.schema_version or '-'}  "
                   f"{record.status.value}{suffix}")


if __name__ == '__main__':
    cli()
