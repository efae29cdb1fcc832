from __future__ import annotations

import asyncio
import os
from typing import Optional

import httpx
import typer
import uvicorn
from dotenv import load_dotenv

from agentdesk.client import AgentDeskClient, ConsoleNotifier
from agentdesk.core.errors import AttemptTimeout, OperationFailed

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from agentdesk.core.config import Settings
    from agentdesk.core.logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)


def _client(url: Optional[str]) -> AgentDeskClient:
    _load_env()
    base = url or os.getenv("AGENTDESK_URL") or "http://127.0.0.1:{}".format(os.getenv("AGENTDESK_PORT", "18800"))
    return AgentDeskClient(base, api_token=os.getenv("AGENTDESK_API_TOKEN") or None, notifier=ConsoleNotifier())


def _run(coro):  # noqa: ANN001, ANN202
    try:
        return asyncio.run(coro)
    except OperationFailed as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except (httpx.HTTPError, AttemptTimeout) as exc:
        typer.secho(f"Gateway unreachable: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind host"),
    port: int = typer.Option(18800, help="Bind port"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    _load_env()
    _setup_logging()
    uvicorn.run("agentdesk.core.gateway:create_app", host=host, port=port, reload=reload, factory=True)


@app.command()
def version() -> None:
    from agentdesk import __version__

    typer.echo(__version__)


@app.command()
def chat(
    message: str = typer.Argument(..., help="What to ask the agents"),
    user: str = typer.Option(..., "--user", "-u", envvar="AGENTDESK_DEFAULT_USER_ID", help="User id"),
    url: Optional[str] = typer.Option(None, help="Gateway base URL"),
) -> None:
    """Dispatch a message and print the routed task."""
    result = _run(_client(url).dispatch(user, message))
    typer.echo(f"{result['task_id']} [{result['intent']}] {result['status']}")
    typer.echo(result["response"])


@app.command()
def stop(
    user: str = typer.Option(..., "--user", "-u", envvar="AGENTDESK_DEFAULT_USER_ID", help="User id"),
    url: Optional[str] = typer.Option(None, help="Gateway base URL"),
) -> None:
    """Kill switch: cancel every active task for a user."""
    result = _run(_client(url).stop_all(user))
    if result["cancelled"]:
        typer.echo(f"Stopped {result['cancelled']} task(s).")
    else:
        typer.echo("No active tasks to stop.")


@app.command()
def cancel(
    task_id: str = typer.Argument(..., help="Task to cancel"),
    url: Optional[str] = typer.Option(None, help="Gateway base URL"),
) -> None:
    result = _run(_client(url).cancel(task_id))
    if result["cancelled"]:
        typer.echo(f"Cancelled {task_id}.")
    else:
        typer.echo(f"{task_id} was already {result['status']}.")


@app.command()
def tail(
    user: str = typer.Option(..., "--user", "-u", envvar="AGENTDESK_DEFAULT_USER_ID", help="User id"),
    task_id: Optional[str] = typer.Option(None, "--task", help="Only this task"),
    limit: int = typer.Option(20, help="Number of feed lines"),
    url: Optional[str] = typer.Option(None, help="Gateway base URL"),
) -> None:
    """Print the collapsed activity feed."""
    data = _run(_client(url).activity(user_id=user, task_id=task_id, limit=limit))
    for line in data["feed"]:
        typer.echo(line)


if __name__ == "__main__":
    app()
