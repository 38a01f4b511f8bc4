"""Main CLI entrypoint for Shipyard."""

import json
import sys
from collections import deque
from pathlib import Path
from typing import Any, Dict, List

import click
from dotenv import dotenv_values, load_dotenv

from ..analyzer import ProjectType
from ..context import DeployContext
from ..envfile import mask_value
from ..errors import ProjectBusy, ProjectNotFound, ShipyardError
from ..health import check_all, check_health
from ..logs import configure_logging
from ..migrate import migrate_existing_projects
from ..orchestrator import ENVIRONMENTS, DeployRequest, Orchestrator

load_dotenv()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_FOUND = 2
EXIT_BUSY = 3

TYPE_CHOICES = ['auto', 'backend', 'frontend', 'multi-package', 'monorepo']
LOG_TYPES = ['build', 'runtime', 'activity', 'pm2']


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--verbose', '-v', is_flag=True, help='Show progress on stderr')
@click.pass_context
def main(ctx, output_json, verbose):
    """Shipyard - deploy Node.js repositories behind PM2 and nginx."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    if 'context' not in ctx.obj:
        ctx.obj['context'] = DeployContext.from_env()
    configure_logging(ctx.obj['context'].settings.logs_dir, verbose=verbose)


def _context() -> DeployContext:
    return click.get_current_context().obj['context']


def _orchestrator() -> Orchestrator:
    obj = click.get_current_context().obj
    if 'orchestrator' not in obj:
        obj['orchestrator'] = Orchestrator(obj['context'])
    return obj['orchestrator']


def _is_json() -> bool:
    return click.get_current_context().obj.get('json', False)


def _json_output(data: Any) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, default=str))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not _is_json():
        click.echo(message)


def _report(data: Dict[str, Any], message: str) -> None:
    if _is_json():
        _json_output(data)
    else:
        click.echo(message)


def _exit_code(error: Exception) -> int:
    if isinstance(error, ProjectNotFound):
        return EXIT_NOT_FOUND
    if isinstance(error, ProjectBusy):
        return EXIT_BUSY
    return EXIT_FAILED


def _fail(error: Exception) -> None:
    if _is_json():
        _json_output({'error': str(error)})
    else:
        click.echo(f"❌ {error}", err=True)
    sys.exit(_exit_code(error))


def _parse_env_pairs(pairs: List[str]) -> Dict[str, str]:
    env_vars = {}
    for pair in pairs:
        if '=' not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint='--env')
        key, value = pair.split('=', 1)
        env_vars[key.strip()] = value
    return env_vars


@main.command()
@click.option('--repo', required=True, help='Repository URL')
@click.option('--branch', default='main', show_default=True, help='Branch to deploy')
@click.option('--type', 'project_type', type=click.Choice(TYPE_CHOICES), default='auto', show_default=True,
              help='Project type (auto-detected by default)')
@click.option('--port', type=int, help='Preferred port for the supervised process')
@click.option('--env', 'env_pairs', multiple=True, help='Environment variable KEY=VALUE (repeatable)')
@click.option('--env-file', type=click.Path(exists=True, dir_okay=False), help='Read environment variables from a .env file')
@click.option('--name', help='Project name (derived from the repository by default)')
@click.option('--base-path', default='/', show_default=True, help='Route prefix (API prefix for multi-package projects)')
@click.option('--domain', help='Server name for the nginx config')
@click.option('--environment', type=click.Choice(ENVIRONMENTS), default='production', show_default=True)
@click.option('--webhook/--no-webhook', default=False, help='Redeploy on GitHub push events')
@click.option('--force', is_flag=True, help='Wipe the workspace and clone again')
@click.option('--lock-timeout', type=float, help='Seconds to wait if the project is busy')
def deploy(repo, branch, project_type, port, env_pairs, env_file, name, base_path, domain, environment, webhook,
           force, lock_timeout):
    """Deploy a repository."""
    env_vars: Dict[str, str] = {}
    if env_file:
        env_vars.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    env_vars.update(_parse_env_pairs(env_pairs))

    request = DeployRequest(
        repo_url=repo,
        branch=branch,
        project_type=ProjectType.parse(project_type),
        port=port,
        env_vars=env_vars,
        name=name,
        base_path=base_path,
        environment=environment,
        webhook_enabled=webhook,
        domain=domain,
        force=force,
    )

    _human_output(f"🚀 Deploying {repo} ({branch})...")
    try:
        result = _orchestrator().deploy(request, lock_timeout=lock_timeout)
    except ShipyardError as e:
        _fail(e)

    if _is_json():
        _json_output(result.to_dict())
    elif result.success:
        _human_output(f"✅ Deployed {result.project_name}")
        _human_output(f"   Path: {result.project_path}")
        if result.port:
            _human_output(f"   Port: {result.port}")
        if result.supervisor_id:
            _human_output(f"   PM2: {result.supervisor_id}")
        _human_output(f"   nginx: {result.proxy_config_path}")
        for warning in result.warnings:
            _human_output(f"⚠️  {warning}")
    else:
        click.echo(f"❌ Deploy failed at stage {result.stage}: {result.error}", err=True)
        if result.project_name:
            click.echo(f"   Logs: {result.build_log} / {result.activity_log}", err=True)

    sys.exit(EXIT_OK if result.success else EXIT_FAILED)


@main.command()
@click.option('--name', help='Project name (all projects if omitted)')
def status(name):
    """Show project status."""
    orchestrator = _orchestrator()
    try:
        if name:
            info = orchestrator.status(name)
            if _is_json():
                _json_output(info)
                return
            _print_project(info['project'], info['status'])
            last = info.get('last_event') or {}
            if last.get('type') == 'ERROR':
                _human_output(f"   Last error ({last['data'].get('stage')}): {last['data'].get('error')}")
            return

        statuses = [orchestrator.status(r.name) for r in _context().store.list_all()]
    except ShipyardError as e:
        _fail(e)

    if _is_json():
        _json_output(statuses)
        return
    if not statuses:
        _human_output("No projects deployed")
    for info in statuses:
        _print_project(info['project'], info['status'])


def _print_project(project: Dict[str, Any], state: str) -> None:
    _human_output(f"📦 {project['name']} [{state}]")
    _human_output(f"   Repo: {project['repoUrl']} ({project['branch']})")
    _human_output(f"   Type: {project['type']}  Route: {project.get('domain') or project['name'] + '.local'}{project['basePath']}")
    if project.get('port'):
        _human_output(f"   Port: {project['port']}")
    if project.get('supervisorId'):
        _human_output(f"   PM2: {project['supervisorId']}")
    _human_output(f"   Updated: {project['updatedAt']}")


@main.command(name='list')
@click.option('--migrate', is_flag=True, help='Create metadata for projects deployed without it')
def list_cmd(migrate):
    """List deployed projects."""
    ctx = _context()
    migrated: List[str] = []
    if migrate:
        migrated = migrate_existing_projects(ctx)
        _human_output(f"🔁 Migrated {len(migrated)} project(s)")

    records = ctx.store.list_all()
    if _is_json():
        _json_output({'projects': [r.to_dict() for r in records], 'migrated': migrated})
        return

    if not records:
        _human_output("No projects deployed")
        return
    for record in records:
        port = f":{record.port}" if record.port else ""
        _human_output(f"  {record.name:<30} {record.type:<14} {record.host}{record.base_path}{port}  {record.updated_at}")


def _tail(path: Path, lines: int) -> List[str]:
    with open(path, errors='ignore') as f:
        return [line.rstrip('\n') for line in deque(f, maxlen=lines)]


@main.command()
@click.option('--name', required=True, help='Project name')
@click.option('--lines', default=100, show_default=True, help='Number of lines')
@click.option('--type', 'log_type', type=click.Choice(LOG_TYPES), default='runtime', show_default=True)
def logs(name, lines, log_type):
    """Show a project's logs."""
    ctx = _context()
    try:
        record = ctx.store.load(name)
        if record is None:
            raise ProjectNotFound(name)

        if log_type == 'pm2':
            if not record.supervisor_id:
                raise ShipyardError(f"{name} has no PM2 process")
            output = ctx.supervisor.logs(record.supervisor_id, lines).splitlines()
        else:
            path = {
                'build': ctx.settings.build_log_path(record.name),
                'runtime': ctx.settings.runtime_log_path(record.name),
                'activity': ctx.settings.activity_log_path(record.name),
            }[log_type]
            if not path.exists():
                raise ShipyardError(f"No {log_type} log yet: {path}")
            output = _tail(path, lines)
    except ShipyardError as e:
        _fail(e)

    if _is_json():
        _json_output({'name': record.name, 'type': log_type, 'lines': output})
    else:
        click.echo("\n".join(output))


@main.command()
@click.option('--name', required=True, help='Project name')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
@click.option('--lock-timeout', type=float, help='Seconds to wait if the project is busy')
def remove(name, yes, lock_timeout):
    """Remove a project: PM2 process, nginx config, workspace and record."""
    if not yes and not _is_json():
        if not click.confirm(f"Remove project {name} and its workspace?"):
            _human_output("❌ Removal cancelled")
            return

    try:
        result = _orchestrator().remove(name, lock_timeout=lock_timeout)
    except ShipyardError as e:
        _fail(e)

    if _is_json():
        _json_output(result.to_dict())
        return
    _human_output(f"🗑️  Removed {result.name}")
    for warning in result.warnings:
        _human_output(f"⚠️  {warning}")


main.add_command(remove, name='delete')


@main.command()
@click.option('--name', required=True, help='Project name')
@click.option('--branch', help='Branch to pull (the deployed branch by default)')
@click.option('--lock-timeout', type=float, help='Seconds to wait if the project is busy')
def update(name, branch, lock_timeout):
    """Pull the latest changes and restart."""
    _human_output(f"🔄 Updating {name}...")
    try:
        result = _orchestrator().update(name, branch=branch, lock_timeout=lock_timeout)
    except ShipyardError as e:
        _fail(e)

    if _is_json():
        _json_output(result.to_dict())
    elif result.success:
        _human_output(f"✅ Updated {name} to {result.commit}")
    else:
        click.echo(f"❌ Update failed at stage {result.stage}: {result.error}", err=True)
    sys.exit(EXIT_OK if result.success else EXIT_FAILED)


@main.command()
@click.option('--name', required=True, help='Project name')
@click.option('--get', 'get_key', metavar='KEY', help='Print a variable')
@click.option('--set', 'set_pair', metavar='KEY=VALUE', help='Set a variable and restart')
@click.option('--unset', 'unset_key', metavar='KEY', help='Remove a variable and restart')
@click.option('--list', 'list_all', is_flag=True, help='List variables (secrets masked)')
@click.option('--backup', is_flag=True, help='Back up the .env file')
@click.option('--restore', 'restore_path', metavar='PATH', help="Restore a backup ('latest' for the newest)")
def env(name, get_key, set_pair, unset_key, list_all, backup, restore_path):
    """Manage a project's environment variables."""
    chosen = [opt for opt in (get_key, set_pair, unset_key, list_all, backup, restore_path) if opt]
    if len(chosen) != 1:
        raise click.UsageError("Choose exactly one of --get, --set, --unset, --list, --backup, --restore")

    orchestrator = _orchestrator()
    try:
        if get_key:
            value = orchestrator.get_env(name, get_key)
            if value is None:
                raise ShipyardError(f"Environment variable not set: {get_key}")
            _report({'key': get_key, 'value': value}, value)

        elif set_pair:
            key, sep, value = set_pair.partition('=')
            if not sep or not key:
                raise click.BadParameter("expected KEY=VALUE", param_hint='--set')
            orchestrator.set_env(name, key, value)
            _report({'set': key}, f"✅ Set {key}; process restarted")

        elif unset_key:
            if not orchestrator.unset_env(name, unset_key):
                raise ShipyardError(f"Environment variable not set: {unset_key}")
            _report({'unset': unset_key}, f"✅ Removed {unset_key}; process restarted")

        elif list_all:
            values = orchestrator.list_env(name)
            if _is_json():
                _json_output({k: mask_value(k, v) for k, v in values.items()})
            elif not values:
                _human_output("No environment variables set")
            else:
                for key, value in values.items():
                    _human_output(f"  {key}={mask_value(key, value)}")

        elif backup:
            path = orchestrator.backup_env(name)
            _report({'backup': str(path)}, f"✅ Backup written: {path}")

        else:
            source = orchestrator.restore_env(name, None if restore_path == 'latest' else restore_path)
            _report({'restored': str(source)}, f"✅ Restored {source}; process restarted")

    except ShipyardError as e:
        _fail(e)


@main.command()
@click.option('--name', help='Project name (all projects if omitted)')
@click.option('--http', is_flag=True, help='Also probe http://localhost:<port>/')
def health(name, http):
    """Check PM2 status (and optionally HTTP) of deployed projects."""
    ctx = _context()
    try:
        statuses = [check_health(ctx, name, http=http)] if name else check_all(ctx, http=http)
    except ShipyardError as e:
        _fail(e)

    if _is_json():
        _json_output([s.to_dict() for s in statuses] if not name else statuses[0].to_dict())
    else:
        if not statuses:
            _human_output("No projects deployed")
        for s in statuses:
            mark = "✅" if s.healthy else "❌"
            details = f"pm2={s.supervisor_status or '-'}"
            if s.restarts is not None:
                details += f" restarts={s.restarts}"
            if s.memory_bytes:
                details += f" mem={s.memory_bytes // (1024 * 1024)}MB"
            if s.http_status is not None:
                details += f" http={s.http_status}"
            _human_output(f"{mark} {s.project_name:<30} {details}")

    if any(not s.healthy for s in statuses):
        sys.exit(EXIT_FAILED)


@main.command()
@click.option('--host', default='0.0.0.0', show_default=True)
@click.option('--port', default=3003, show_default=True, type=int, help='Webhook server port')
@click.option('--secret', help='Webhook secret (SHIPYARD_WEBHOOK_SECRET by default)')
@click.option('--path', 'path', default='/webhook', show_default=True, help='Webhook path')
def webhook(host, port, secret, path):
    """Run the GitHub webhook server."""
    from ..webhook import serve

    ctx = _context()
    if not (secret or ctx.settings.webhook_secret):
        click.echo("⚠️  No webhook secret configured; requests will not be authenticated", err=True)
    _human_output(f"📡 Webhook URL: http://{host}:{port}{path} (content type application/json, push events)")
    serve(ctx, host=host, port=port, secret=secret, path=path)

