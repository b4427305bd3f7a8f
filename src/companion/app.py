# /companion/app.py
"""
Terminal chat client for the companion turn pipeline.
Handles the menu, the chat loop and rendering; all turn logic lives in the service.
"""
import os
import sys

from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from .config import USE_API_LLM, API_MODEL_NAME, LOCAL_MODEL_NAME, console
from .errors import CompanionError
from .observability import get_logger
from .service import ConversationService, build_service

logger = get_logger(__name__)

CHAT_COMMANDS = ("/history", "/progress", "/review", "/exit")


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    model = API_MODEL_NAME if USE_API_LLM else LOCAL_MODEL_NAME
    console.print(Panel(
        "[bold magenta]Companion - Supportive Conversation CLI[/bold magenta]",
        subtitle=f"[cyan]Model: {model}[/cyan]",
        expand=False
    ))
    console.print("[dim]Not a substitute for professional care. In an emergency, contact local emergency services.[/dim]")


def resolve_owner() -> str:
    return os.getenv("COMPANION_OWNER") or os.getenv("USER") or "local"


def render_history(history: dict):
    for message in history["messages"]:
        if message["role"] == "user":
            console.print(f"[bold cyan]You:[/bold cyan] {message['content']}")
        else:
            console.print(Panel(message["content"], title="Leo", border_style="blue"))
    if not history["messages"]:
        console.print("[dim]No messages yet.[/dim]")


def render_progress(history: dict):
    summary = history.get("progress_summary")
    if not summary:
        console.print("[yellow]Not enough conversation yet to show progress.[/yellow]")
        return
    table = Table(title="Progress")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Assessed turns", str(summary["session_count"]))
    table.add_row("Mean intensity", f"{summary['mean_intensity']:.1f}/10")
    table.add_row("Techniques explored", str(summary["distinct_techniques"]))
    table.add_row("Trend", summary["trend"])
    console.print(table)


def render_review(review: dict):
    lines = []
    if review["emotional_summary"]:
        lines.append(review["emotional_summary"])
    for label, key in (
        ("Themes", "themes"),
        ("Areas of concern", "areas_of_concern"),
        ("Suggestions", "recommendations"),
        ("Progress", "progress_indicators"),
    ):
        if review[key]:
            lines.append(f"{label}: {', '.join(review[key])}")
    console.print(Panel("\n".join(lines) or "Nothing to review yet.", title="Session review", border_style="green"))


def list_sessions(service: ConversationService, owner: str):
    rows = service.list_sessions(owner)
    if not rows:
        console.print("[yellow]No sessions yet.[/yellow]")
        return
    table = Table(title="Your sessions")
    table.add_column("Session")
    table.add_column("Status")
    table.add_column("Messages")
    table.add_column("Last message")
    for row in rows:
        table.add_row(row["session_id"], row["status"], str(row["message_count"]), row["last_message_preview"])
    console.print(table)


# --- Chat loop ---

def handle_chat_session(service: ConversationService, owner: str, session_id: str):
    console.print(f"[dim]Session {session_id}. Commands: {', '.join(CHAT_COMMANDS)}[/dim]")
    while True:
        utterance = Prompt.ask("[bold cyan]You[/bold cyan]")
        command = utterance.strip().lower()
        try:
            if command == "/exit":
                break
            if command == "/history":
                render_history(service.get_history(session_id, owner))
                continue
            if command == "/progress":
                render_progress(service.get_history(session_id, owner))
                continue
            if command == "/review":
                with console.status("[cyan]Reviewing the conversation...[/cyan]"):
                    review = service.review_session(session_id, owner)
                render_review(review.to_dict())
                continue

            with console.status("[cyan]Leo is thinking...[/cyan]"):
                result = service.send_turn(session_id, owner, utterance)
        except CompanionError as exc:
            console.print(f"[bold red]{exc}[/bold red]")
            logger.warning("cli_request_failed", error_type=type(exc).__name__, error=str(exc))
            continue

        console.print(Panel(result.reply, title="Leo", border_style="blue"))
        if result.conversation_complete:
            console.print("[green]This session is complete. Start a new one any time.[/green]")
            break


def main():
    """Main application loop."""
    display_welcome_banner()
    owner = resolve_owner()
    service = build_service()
    purged = service.purge_empty_sessions()
    if purged:
        console.print(f"[dim]Removed {purged} empty session(s).[/dim]")

    try:
        while True:
            try:
                console.print("\n[bold]Main Menu:[/bold]")
                console.print("[green]1. Start New Session[/green]")
                console.print("[cyan]2. Resume Session[/cyan]")
                console.print("[blue]3. List Sessions[/blue]")
                console.print("[red]4. Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=["1", "2", "3", "4"])

                if choice == "1":
                    handle_chat_session(service, owner, service.create_session(owner))
                elif choice == "2":
                    session_id = Prompt.ask("Enter the session id").strip()
                    if session_id:
                        handle_chat_session(service, owner, session_id)
                elif choice == "3":
                    list_sessions(service, owner)
                elif choice == "4":
                    break
            except KeyboardInterrupt:
                break
            except CompanionError as exc:
                console.print(f"[bold red]{exc}[/bold red]")
    finally:
        service.close()

    console.print("\n[bold magenta]Take care. I'm here whenever you want to talk.[/bold magenta]")
    sys.exit(0)

if __name__ == "__main__":
    main()
