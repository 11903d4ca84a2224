"""
DR Orchestrator CLI
Runs the service and drives its operator API from the command line
"""

import json
import sys
from typing import Any, Dict, Optional

import click
import httpx

EXIT_ACCEPTED = 0
EXIT_FATAL = 1
EXIT_REJECTED = 3

DEFAULT_API_URL = "http://localhost:8080"


def exit_code_for(response: httpx.Response) -> int:
    """Map an API response to the CLI exit code"""
    if response.status_code == 202:
        return EXIT_ACCEPTED
    try:
        outcome = response.json().get("outcome")
    except ValueError:
        outcome = None
    if outcome == "rejected" or (outcome is None and 400 <= response.status_code < 500):
        return EXIT_REJECTED
    return EXIT_FATAL


def _call(ctx: click.Context, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> None:
    url = ctx.obj["api_url"].rstrip("/") + path
    try:
        with httpx.Client(timeout=ctx.obj["timeout"]) as client:
            response = client.request(method, url, json=payload)
    except httpx.HTTPError as e:
        click.echo(f"✗ Could not reach {url}: {e}", err=True)
        sys.exit(EXIT_FATAL)

    try:
        body = response.json()
    except ValueError:
        body = {"message": response.text}

    code = exit_code_for(response)
    if method == "GET" and response.is_success:
        click.echo(json.dumps(body, indent=2))
        sys.exit(EXIT_ACCEPTED)
    if code == EXIT_ACCEPTED:
        click.echo(f"✓ {body.get('message', 'accepted')}")
    else:
        error = body.get("error") or {}
        click.echo(f"✗ {body.get('message', response.reason_phrase)}", err=True)
        if error.get("code"):
            click.echo(f"  Code: {error['code']} ({error.get('category')})", err=True)
    if body.get("data"):
        click.echo(json.dumps(body["data"], indent=2))
    sys.exit(code)


@click.group()
@click.option('--api-url', envvar='DR_API_URL', default=DEFAULT_API_URL, show_default=True,
              help='Base URL of the orchestrator API')
@click.option('--timeout', default=30.0, show_default=True, help='Request timeout in seconds')
@click.pass_context
def cli(ctx, api_url, timeout):
    """DR orchestrator operator CLI"""
    ctx.ensure_object(dict)
    ctx.obj['api_url'] = api_url
    ctx.obj['timeout'] = timeout


@cli.command()
@click.option('--host', default=None, help='Bind address (defaults to DR_API_HOST)')
@click.option('--port', default=None, type=int, help='Bind port (defaults to DR_API_PORT)')
def serve(host, port):
    """Run the orchestrator service"""
    import uvicorn

    from .app import create_app
    from .config import get_settings

    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.pass_context
def status(ctx):
    """Show DR state, region health and workload progress"""
    _call(ctx, "GET", "/api/v1/dr/status")


@cli.command('register')
@click.option('--name', required=True, help='Workload name')
@click.option('--namespace', required=True, help='Workload namespace')
@click.option('--dump-executor', required=True, help='Executor reference used for dumps')
@click.option('--restore-executor', required=True, help='Executor reference used for restores')
@click.option('--cadence-seconds', required=True, type=int, help='Backup cadence')
@click.option('--min-keep', default=3, show_default=True, type=int, help='Backups always retained')
@click.option('--max-age-days', default=7, show_default=True, type=int, help='Retention age')
@click.option('--replicas', default=1, show_default=True, type=int, help='Replicas when running')
@click.pass_context
def register(ctx, name, namespace, dump_executor, restore_executor, cadence_seconds,
             min_keep, max_age_days, replicas):
    """Register or update a workload"""
    _call(ctx, "POST", "/api/v1/dr/workloads", {
        "name": name,
        "namespace": namespace,
        "dump_executor": dump_executor,
        "restore_executor": restore_executor,
        "cadence_seconds": cadence_seconds,
        "retention": {"min_keep": min_keep, "max_age_days": max_age_days},
        "replicas": replicas,
    })


def _split_workload(workload: str):
    namespace, sep, name = workload.partition("/")
    if not sep or not namespace or not name:
        raise click.BadParameter("expected <namespace>/<name>", param_hint="WORKLOAD")
    return namespace, name


@cli.command()
@click.argument('workload')
@click.pass_context
def backup(ctx, workload):
    """Start a backup of WORKLOAD (namespace/name) now"""
    namespace, name = _split_workload(workload)
    _call(ctx, "POST", f"/api/v1/dr/workloads/{namespace}/{name}/backups")


@cli.command()
@click.argument('workload')
@click.option('--sequence', required=True, type=int, help='Backup sequence to restore')
@click.pass_context
def restore(ctx, workload, sequence):
    """Restore WORKLOAD (namespace/name) from a backup in the active region"""
    namespace, name = _split_workload(workload)
    _call(ctx, "POST", f"/api/v1/dr/workloads/{namespace}/{name}/restores", {"sequence": sequence})


@cli.command()
@click.option('--actor', default='operator', show_default=True)
@click.option('--reason', default='operator request', show_default=True)
@click.pass_context
def promote(ctx, actor, reason):
    """Promote the standby region"""
    _call(ctx, "POST", "/api/v1/dr/promote", {"actor": actor, "reason": reason})


@cli.command()
@click.option('--actor', default='operator', show_default=True)
@click.option('--reason', default='operator request', show_default=True)
@click.pass_context
def failback(ctx, actor, reason):
    """Return service to the primary region"""
    _call(ctx, "POST", "/api/v1/dr/failback", {"actor": actor, "reason": reason})


@cli.command('clear-halt')
@click.option('--actor', default='operator', show_default=True)
@click.pass_context
def clear_halt(ctx, actor):
    """Re-enable automated transitions after a failed one"""
    _call(ctx, "POST", "/api/v1/dr/clear-halt", {"actor": actor})


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
