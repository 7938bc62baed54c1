"""
Shipyard CLI - trigger and follow deployments.

Usage:
    shipyard deploy <project_id> <workflow_id> --branch main
    shipyard execute <deployment_id>
    shipyard logs <deployment_id> --follow
"""

import json
import os
import sys

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

DEFAULT_SERVER = "http://localhost:8000"

STATUS_STYLES = {
    "PENDING": "white",
    "WAITING_APPROVAL": "yellow",
    "APPROVED": "cyan",
    "RUNNING": "blue",
    "SUCCESS": "green",
    "FAILED": "red",
    "CANCELLED": "magenta",
    "ROLLED_BACK": "magenta",
}


def get_server_url() -> str:
    """Get the Shipyard server URL from env or default."""
    return os.environ.get("SHIPYARD_SERVER", DEFAULT_SERVER)


def get_user_id() -> str | None:
    return os.environ.get("SHIPYARD_USER")


def _headers(user: str | None) -> dict:
    user_id = user or get_user_id()
    if not user_id:
        console.print("[red]Error:[/red] No user given. Set SHIPYARD_USER or pass --user")
        sys.exit(1)
    return {"X-User-Id": user_id}


def api_request(method: str, path: str, server: str | None, user: str | None, **kwargs) -> dict:
    """Call the API and return the JSON body, exiting with a message on errors."""
    server_url = server or get_server_url()
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.request(method, f"{server_url}{path}", headers=_headers(user), **kwargs)
            response.raise_for_status()
            return response.json()
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to {server_url}")
        console.print("Is the Shipyard server running?")
        sys.exit(1)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        console.print(f"[red]Error:[/red] API returned {e.response.status_code}: {detail}")
        sys.exit(1)


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def print_deployment(deployment: dict) -> None:
    lines = [
        f"ID:       [cyan]{deployment['id']}[/cyan]",
        f"Status:   {format_status(deployment['status'])}",
        f"Project:  {deployment['project_id']}",
        f"Workflow: {deployment['workflow_id']}",
    ]
    if deployment.get("branch"):
        lines.append(f"Branch:   {deployment['branch']}")
    if deployment.get("duration") is not None:
        lines.append(f"Duration: {deployment['duration']}s")
    if deployment.get("error_message"):
        lines.append(f"Error:    [red]{deployment['error_message']}[/red]")
    console.print(Panel.fit("\n".join(lines), title="Deployment"))


server_option = click.option("--server", "-s", default=None, help="Shipyard server URL")
user_option = click.option("--user", "-u", default=None, help="User id (default: $SHIPYARD_USER)")


@click.group()
@click.version_option()
def cli():
    """Shipyard - workspace-locked deployments."""
    pass


@cli.command()
@click.argument("project_id")
@click.argument("workflow_id")
@click.option("--branch", "-b", default=None, help="Branch to deploy (default: project default branch)")
@server_option
@user_option
def deploy(project_id: str, workflow_id: str, branch: str | None, server: str | None, user: str | None):
    """
    Create a deployment of a workflow.

    Gated workflows wait for approval unless you own the project.
    """
    data = api_request(
        "POST",
        "/api/deployments",
        server,
        user,
        json={"project_id": project_id, "workflow_id": workflow_id, "branch": branch},
    )
    deployment = data["deployment"]
    print_deployment(deployment)
    if data.get("approval"):
        console.print(f"Waiting for approval until {data['approval']['expires_at']}")
    elif deployment["status"] == "PENDING":
        console.print(f"Start it with [cyan]shipyard execute {deployment['id']}[/cyan]")


@cli.command()
@click.argument("deployment_id")
@click.option("--follow", "-f", is_flag=True, help="Follow the log after starting")
@server_option
@user_option
@click.pass_context
def execute(ctx, deployment_id: str, follow: bool, server: str | None, user: str | None):
    """Start or retry a deployment."""
    deployment = api_request("POST", f"/api/deployments/{deployment_id}/execute", server, user)
    print_deployment(deployment)
    if follow:
        ctx.invoke(logs, deployment_id=deployment_id, follow=True, server=server, user=user)


@cli.command()
@click.argument("deployment_id")
@click.option("--comment", "-m", default=None, help="Comment recorded with the decision")
@server_option
@user_option
def approve(deployment_id: str, comment: str | None, server: str | None, user: str | None):
    """Approve a deployment waiting for approval."""
    deployment = api_request(
        "POST", f"/api/deployments/{deployment_id}/approve", server, user, json={"comment": comment}
    )
    print_deployment(deployment)


@cli.command()
@click.argument("deployment_id")
@click.option("--comment", "-m", default=None, help="Comment recorded with the decision")
@server_option
@user_option
def reject(deployment_id: str, comment: str | None, server: str | None, user: str | None):
    """Reject a deployment waiting for approval."""
    deployment = api_request(
        "POST", f"/api/deployments/{deployment_id}/reject", server, user, json={"comment": comment}
    )
    print_deployment(deployment)


@cli.command()
@click.argument("deployment_id")
@server_option
@user_option
def cancel(deployment_id: str, server: str | None, user: str | None):
    """Cancel a deployment, killing its running command."""
    deployment = api_request("POST", f"/api/deployments/{deployment_id}/cancel", server, user)
    print_deployment(deployment)


@cli.command()
@click.argument("deployment_id")
@server_option
@user_option
def status(deployment_id: str, server: str | None, user: str | None):
    """Show a deployment."""
    deployment = api_request("GET", f"/api/deployments/{deployment_id}", server, user)
    print_deployment(deployment)
    if deployment.get("holds_lock"):
        console.print("Holds the project workspace lock")


@cli.command("list")
@click.option("--project", "-p", "project_id", default=None, help="Only this project")
@click.option("--status", "status_filter", default=None, help="Only this status")
@click.option("--page", default=1, show_default=True)
@click.option("--page-size", default=20, show_default=True)
@server_option
@user_option
def list_deployments(
    project_id: str | None,
    status_filter: str | None,
    page: int,
    page_size: int,
    server: str | None,
    user: str | None,
):
    """List deployments you can see, newest first."""
    params = {"page": page, "page_size": page_size}
    if project_id:
        params["project_id"] = project_id
    if status_filter:
        params["status"] = status_filter.upper()

    data = api_request("GET", "/api/deployments", server, user, params=params)
    if not data["items"]:
        console.print("No deployments found. Use [cyan]shipyard deploy[/cyan] to create one.")
        return

    table = Table(title=f"Deployments ({data['total']} total)")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Project")
    table.add_column("Branch")
    table.add_column("Created")
    table.add_column("Duration", justify="right")
    for d in data["items"]:
        table.add_row(
            d["id"],
            format_status(d["status"]),
            d["project_id"],
            d.get("branch") or "",
            d["created_at"],
            f"{d['duration']}s" if d.get("duration") is not None else "",
        )
    console.print(table)


def iter_sse(lines):
    """Group raw SSE lines into (event, data) pairs."""
    event, data = None, []
    for line in lines:
        if line == "":
            if event or data:
                yield event or "message", "\n".join(data)
            event, data = None, []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:"):].lstrip())
    if event or data:
        yield event or "message", "\n".join(data)


@cli.command()
@click.argument("deployment_id")
@click.option("--follow", "-f", is_flag=True, help="Stream new output until the deployment finishes")
@server_option
@user_option
def logs(deployment_id: str, follow: bool, server: str | None, user: str | None):
    """Print a deployment's log."""
    if not follow:
        deployment = api_request("GET", f"/api/deployments/{deployment_id}", server, user)
        console.out(deployment.get("logs") or "", end="")
        return

    server_url = server or get_server_url()
    final_status = None
    try:
        with httpx.Client(timeout=None) as client:
            with client.stream(
                "GET",
                f"{server_url}/api/deployments/{deployment_id}/logs",
                headers=_headers(user),
            ) as response:
                response.raise_for_status()
                for event, raw in iter_sse(response.iter_lines()):
                    payload = json.loads(raw) if raw else {}
                    if event == "logs":
                        console.out(payload.get("data", ""), end="")
                    elif event == "complete":
                        final_status = payload.get("status")
                        break
                    elif event == "error":
                        console.print(f"[red]Error:[/red] {payload.get('message')}")
                        if payload.get("message") == "Deployment not found":
                            sys.exit(1)
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to {server_url}")
        sys.exit(1)
    except httpx.HTTPStatusError as e:
        console.print(f"[red]Error:[/red] API returned {e.response.status_code}")
        sys.exit(1)

    if final_status:
        console.print(f"\nDeployment finished: {format_status(final_status)}")
        if final_status != "SUCCESS":
            sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
