"""
MODULE OVERVIEW:
The Rich terminal views for the chat client.

WHAT IS HAPPENING HERE:
`ChatRoomState` folds incoming events into what a human wants to see: the
message feed, who is online, who is typing. `ChatDashboard` renders that state
as a live-updating Rich layout (used by `runner.py watch`), while
`format_event` gives the line-by-line rendering used by `runner.py chat`.
"""

from rich.live import Live
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table
from collections import deque
from datetime import datetime, timedelta, timezone
import asyncio

from client.chat_client import ChatClient
from shared.models import MessageEvent, PresenceChange, TypingNotice

TYPING_VISIBLE_FOR = timedelta(seconds=5)


def format_event(event) -> str:
    ts = event.timestamp.astimezone().strftime("%H:%M:%S")
    if isinstance(event, MessageEvent):
        return f"[cyan]{ts}[/] [bold magenta]{event.sender_name or event.sender}[/]: {event.text}"
    if isinstance(event, PresenceChange):
        colour = "green" if event.status == "online" else "red"
        return f"[cyan]{ts}[/] [{colour}]* {event.display_name or event.participant} is {event.status}[/]"
    if isinstance(event, TypingNotice):
        return f"[cyan]{ts}[/] [dim]{event.sender_name or event.sender} is typing...[/]"
    return f"[cyan]{ts}[/] {event!r}"


class ChatRoomState:
    def __init__(self, feed_size: int = 15):
        self.messages: deque[MessageEvent] = deque(maxlen=feed_size)
        self.online: dict[str, str] = {}
        self.typing: dict[str, datetime] = {}
        self.timeline: deque[str] = deque(maxlen=5)

    def apply(self, event) -> None:
        if isinstance(event, MessageEvent):
            self.messages.appendleft(event)
            self.typing.pop(event.sender, None)
        elif isinstance(event, TypingNotice):
            self.typing[event.sender] = event.timestamp
        elif isinstance(event, PresenceChange):
            name = event.display_name or event.participant
            if event.status == "online":
                self.online[event.participant] = name
            else:
                self.online.pop(event.participant, None)
                self.typing.pop(event.participant, None)
            self.timeline.appendleft(f"{name} {event.status}")

    def reset_presence(self) -> None:
        """A new session gets a fresh roster from the hub; forget the old one."""
        self.online.clear()
        self.typing.clear()

    def typing_now(self, now: datetime | None = None) -> list[str]:
        now = now or datetime.now(timezone.utc)
        return [
            self.online.get(sender, sender)
            for sender, at in self.typing.items()
            if now - at <= TYPING_VISIBLE_FOR
        ]


class ChatDashboard:
    def __init__(self, client: ChatClient):
        self.client = client
        self.room = ChatRoomState()
        self.status = "INITIALIZING"

    def on_status_change(self, status: str):
        self.status = status
        if status == "ACTIVE":
            self.room.reset_presence()
        ts = datetime.now().strftime("%H:%M:%S")
        self.room.timeline.appendleft(f"[{ts}] State: {status}")

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main")
        )
        layout["main"].split_row(
            Layout(name="left", ratio=2),
            Layout(name="right", ratio=1)
        )
        layout["right"].split_column(
            Layout(name="online"),
            Layout(name="stats"),
            Layout(name="timeline")
        )

        # Header
        color = "green" if "ACTIVE" in self.status else "yellow" if "RECONNECTING" in self.status else "red"
        layout["header"].update(Panel(
            f"[{color} bold]{self.client.display_name} ({self.client.connection_id}) | Status: {self.status}[/]",
            style=color,
        ))

        # Feed Table
        table = Table(title="Messages", expand=True)
        table.add_column("Time", justify="left", style="cyan", no_wrap=True)
        table.add_column("From", style="magenta")
        table.add_column("Text", style="green")
        for m in self.room.messages:
            table.add_row(m.timestamp.astimezone().strftime("%H:%M:%S"), m.sender_name or m.sender, m.text)

        typing = self.room.typing_now()
        subtitle = f"{', '.join(typing)} typing..." if typing else None
        layout["left"].update(Panel(table, title="Feed", subtitle=subtitle))

        online_text = "\n".join(sorted(self.room.online.values())) or "(nobody else yet)"
        layout["online"].update(Panel(online_text, title="Online"))

        stats_text = (
            f"Events Received: {self.client.events_received}\n"
            f"Messages Sent: {self.client.messages_sent}\n"
            f"Reconnects: {self.client.reconnect_count}"
        )
        layout["stats"].update(Panel(stats_text, title="Connection Stats"))

        layout["timeline"].update(Panel("\n".join(self.room.timeline), title="Timeline"))
        return layout

    async def run(self, duration_s: float | None = None):
        # Bridge the client hooks
        async def event_hook(e): self.room.apply(e)
        async def status_hook(s): self.on_status_change(s)

        self.client.set_callbacks(event_hook, status_hook)

        client_task = asyncio.create_task(self.client.run(duration_s))

        with Live(self.generate_layout(), refresh_per_second=4) as live:
            while not client_task.done():
                live.update(self.generate_layout())
                await asyncio.sleep(0.25)
            live.update(self.generate_layout())
        # A rejected session (duplicate id) ends the task with the close error.
        await asyncio.gather(client_task, return_exceptions=True)
