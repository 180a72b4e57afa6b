"""
CLI entrypoint for the chat broadcast hub.
"""
import typer
import asyncio
from typing import Optional

import websockets
from rich.console import Console

from client.chat_client import ChatClient
from client.chat_view import ChatDashboard, format_event
from shared.config import settings
from shared.log_setup import configure_logging

app = typer.Typer(help="Chat Broadcast Hub CLI")
console = Console()


def _base_url(host: str) -> str:
    return f"http://{host}:{settings.PORT}"


@app.callback()
def main(log_level: str = typer.Option(settings.LOG_LEVEL, help="Loguru level for this process")):
    configure_logging(log_level)


@app.command()
def server():
    """Start the FastAPI hub server using Uvicorn."""
    import uvicorn
    typer.echo(f"Starting server on port {settings.PORT}...")
    uvicorn.run("server.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


async def _chat_session(client: ChatClient) -> None:
    async def on_event(event): console.print(format_event(event))
    async def on_status(status): console.print(f"[yellow]-- {status}[/]")

    client.set_callbacks(on_event, on_status)
    client_task = asyncio.create_task(client.run())
    try:
        await client.wait_connected()
        while not client_task.done():
            line = await asyncio.to_thread(input)
            line = line.strip()
            if line in ("/quit", "/exit"):
                break
            try:
                if line == "/typing":
                    await client.send_typing()
                elif line:
                    await client.send_message(line)
            except (ConnectionError, websockets.WebSocketException):
                console.print("[red]-- not connected, message dropped[/]")
    finally:
        client_task.cancel()
        await asyncio.gather(client_task, return_exceptions=True)


@app.command()
def chat(
    name: str = typer.Option(..., help="Display name shown to other participants"),
    host: str = typer.Option("127.0.0.1", help="Hub host"),
):
    """Join the chat interactively. Type a line to send it, /quit to leave."""
    client = ChatClient(name, _base_url(host))
    try:
        asyncio.run(_chat_session(client))
    except (KeyboardInterrupt, EOFError):
        pass
    except asyncio.TimeoutError:
        typer.echo("Could not reach the hub.", err=True)
        raise typer.Exit(1)


@app.command()
def watch(
    name: str = typer.Option("watcher", help="Display name for this observer"),
    host: str = typer.Option("127.0.0.1", help="Hub host"),
    duration: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
):
    """Follow the chat on a live Rich dashboard."""
    dashboard = ChatDashboard(ChatClient(name, _base_url(host)))
    try:
        asyncio.run(dashboard.run(duration))
    except KeyboardInterrupt:
        pass


async def _say_once(client: ChatClient, text: str) -> None:
    task = asyncio.create_task(client.run())
    try:
        await client.wait_connected()
        await client.send_message(text)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


@app.command()
def say(
    text: str = typer.Argument(..., help="Message text"),
    name: str = typer.Option(..., help="Display name"),
    host: str = typer.Option("127.0.0.1", help="Hub host"),
):
    """Send a single message and exit."""
    try:
        asyncio.run(_say_once(ChatClient(name, _base_url(host)), text))
    except asyncio.TimeoutError:
        typer.echo("Could not reach the hub.", err=True)
        raise typer.Exit(1)


@app.command()
def stats(host: str = typer.Option("127.0.0.1", help="Hub host")):
    """Query the server for live hub stats."""
    import httpx
    resp = httpx.get(f"{_base_url(host)}/stats")
    typer.echo(resp.json())


@app.command()
def participants(host: str = typer.Option("127.0.0.1", help="Hub host")):
    """List who is currently connected."""
    import httpx
    resp = httpx.get(f"{_base_url(host)}/participants")
    for p in resp.json():
        typer.echo(f"{p['connection_id']}\t{p['display_name']}\tsince {p['connected_at']}")


if __name__ == "__main__":
    app()
