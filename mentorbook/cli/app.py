"""
Main CLI application using Typer.

Every command loads the YAML state file into an ``InMemoryStore``, runs one
engine operation and writes the state back when the operation changed it.
"""

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator, Optional

import pendulum
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ..adapters import InMemoryStore, StateFile
from ..api import BookingEngine
from ..config import EngineConfig, get_default_config_path
from ..domain.exceptions import BookingEngineError
from ..domain.models import Actor, AppointmentStatus, Role
from ..schemas import AppointmentOut, AppointmentUpdate, BookingRequest, CancelRequest

app = typer.Typer(
    name="mentorbook",
    help="Book mentoring sessions and manage session credits",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./mentorbook.yaml"),
]
StateOption = Annotated[
    Optional[Path],
    typer.Option("--state", help="State file to use instead of the one in the config"),
]


class Session:
    """A loaded config, store and engine for one CLI invocation."""

    def __init__(self, config: EngineConfig, state_file: StateFile):
        self.config = config
        self.state_file = state_file
        self.store: InMemoryStore = state_file.load()
        self.engine = BookingEngine(self.store, config=config)

    def run(self, coro):
        return asyncio.run(coro)

    def save(self) -> None:
        self.state_file.save(self.store)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@contextmanager
def _session(config_file: Optional[Path], state: Optional[Path]) -> Iterator[Session]:
    """
    Open a session and turn engine errors into a red message and exit code 1.
    """
    try:
        config_path = config_file or get_default_config_path()
        config = EngineConfig.load_from_yaml(config_path)
        _setup_logging(config.log_level)

        state_path = state or config.resolve_state_file(config_path.parent)
        yield Session(config, StateFile(state_path))

    except BookingEngineError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message} [dim]({e.code})[/dim]")
        for key, value in e.details.items():
            console.print(f"   [dim]{key}:[/dim] {value}")
        raise typer.Exit(1)

    except ValidationError as e:
        console.print(f"[bold red]Invalid input:[/bold red] {e}")
        raise typer.Exit(1)

    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


def _parse_day(value: str, tz: str) -> pendulum.Date:
    try:
        return pendulum.from_format(value, "YYYY-MM-DD", tz=tz).date()
    except ValueError as e:
        raise ValueError(f"Could not parse date {value!r}: {e}") from e


def _actor(user_id: str, role: str) -> Actor:
    return Actor(id=user_id, roles=frozenset({Role(role)}))


def _print_appointment(appointment: AppointmentOut, title: str) -> None:
    local = appointment.local_start()
    lines = [
        f"[bold]ID:[/bold] {appointment.id}",
        f"[bold]Status:[/bold] {appointment.status.value}",
        f"[bold]Student:[/bold] {appointment.student_id}",
        f"[bold]Mentor:[/bold] {appointment.mentor_id or '-'}",
        f"[bold]Service:[/bold] {appointment.service_offering_id}",
        f"[bold]Time:[/bold] {local.format('DD.MM.YYYY HH:mm')} ({appointment.timezone}, "
        f"{appointment.duration_minutes} min)",
        f"[bold]Credits:[/bold] {appointment.credit_cost}"
        + (" (charged)" if appointment.credits_charged else ""),
    ]
    console.print(Panel.fit("\n".join(lines), title=title))


@app.command()
def availability(
    mentor_id: Annotated[str, typer.Argument(help="Mentor whose schedule is searched")],
    config_file: ConfigOption = None,
    state: StateOption = None,
    start: Annotated[Optional[str], typer.Option("--start", help="First day (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="Last day, inclusive (YYYY-MM-DD)")] = None,
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Session length in minutes")] = None,
    service: Annotated[Optional[str], typer.Option("--service", "-s", help="Size slots to this service")] = None,
):
    """
    List free slots of a mentor.

    Examples:

        mentorbook availability mentor-1 --start 2025-03-03 --end 2025-03-07

        mentorbook availability mentor-1 --service intro-call
    """
    with _session(config_file, state) as session:
        tz = session.config.timezone
        first = _parse_day(start, tz) if start else pendulum.today(tz).date()
        last = _parse_day(end, tz) if end else first.add(days=7)

        if service:
            slots = session.run(session.engine.availability_for_service(mentor_id, service, first, last))
        else:
            slots = session.run(session.engine.availability(mentor_id, first, last, duration))

        if not slots:
            console.print(
                "[yellow]⚠ No free slots found.[/yellow]\n"
                "Try a longer range or a shorter duration."
            )
            return

        table = Table(
            title=f"Free slots for {mentor_id}",
            show_header=True,
            header_style="bold cyan"
        )
        table.add_column("Day", style="bold yellow")
        table.add_column("Start")
        table.add_column("End")

        for slot in slots:
            slot_start = pendulum.instance(slot.start).in_timezone(tz)
            slot_end = pendulum.instance(slot.end).in_timezone(tz)
            table.add_row(slot_start.format("ddd DD.MM.YYYY"), slot_start.format("HH:mm"), slot_end.format("HH:mm"))

        console.print()
        console.print(table)
        console.print(f"[green]✓ {len(slots)} slot(s)[/green]\n")


@app.command()
def book(
    student_id: Annotated[str, typer.Argument(help="Student the session is for")],
    service: Annotated[str, typer.Option("--service", "-s", help="Service offering id")],
    at: Annotated[str, typer.Option("--at", help="Start time, ISO 8601 (e.g. 2025-03-03T09:00)")],
    mentor: Annotated[Optional[str], typer.Option("--mentor", "-m", help="Mentor id")] = None,
    timezone: Annotated[Optional[str], typer.Option("--timezone", help="Timezone of --at and the booking")] = None,
    notes: Annotated[Optional[str], typer.Option("--notes", help="Notes for the mentor")] = None,
    config_file: ConfigOption = None,
    state: StateOption = None,
):
    """
    Book a session and charge the student's credits.
    """
    with _session(config_file, state) as session:
        tz = timezone or session.config.timezone
        request = BookingRequest(
            student_id=student_id,
            service_offering_id=service,
            mentor_id=mentor,
            scheduled_at=pendulum.parse(at, tz=tz),
            timezone=tz,
            notes=notes,
        )
        appointment = session.run(session.engine.book(request))
        session.save()
        _print_appointment(appointment, "✓ Booked")


@app.command()
def cancel(
    appointment_id: Annotated[str, typer.Argument(help="Appointment to cancel")],
    by: Annotated[str, typer.Option("--by", help="User cancelling the appointment")],
    role: Annotated[Role, typer.Option("--role", help="Role of the cancelling user")] = Role.STUDENT,
    reason: Annotated[Optional[str], typer.Option("--reason", help="Cancellation reason")] = None,
    config_file: ConfigOption = None,
    state: StateOption = None,
):
    """
    Cancel an appointment and refund its credits.
    """
    with _session(config_file, state) as session:
        result = session.run(
            session.engine.cancel(appointment_id, _actor(by, role.value), CancelRequest(reason=reason))
        )
        session.save()

        if result.already_cancelled:
            console.print(f"[yellow]Appointment {appointment_id} was already cancelled.[/yellow]")
        else:
            console.print(f"[green]✓ Appointment {appointment_id} cancelled.[/green]")
        if result.refunded:
            console.print(f"   Refunded {result.refund_amount} credit(s) to {result.appointment.student_id}")


@app.command("set-status")
def set_status(
    appointment_id: Annotated[str, typer.Argument(help="Appointment to update")],
    status: Annotated[AppointmentStatus, typer.Argument(help="New status")],
    by: Annotated[str, typer.Option("--by", help="User making the change")],
    role: Annotated[Role, typer.Option("--role", help="Role of the user")] = Role.MENTOR,
    config_file: ConfigOption = None,
    state: StateOption = None,
):
    """
    Move an appointment along its lifecycle (confirm, start, complete, ...).
    """
    with _session(config_file, state) as session:
        appointment = session.run(
            session.engine.update(appointment_id, _actor(by, role.value), AppointmentUpdate(status=status))
        )
        session.save()
        console.print(f"[green]✓ Appointment {appointment.id} is now {appointment.status.value}.[/green]")


@app.command()
def balance(
    user_id: Annotated[str, typer.Argument(help="User whose balance is shown")],
    config_file: ConfigOption = None,
    state: StateOption = None,
):
    """
    Show a user's credit balance.
    """
    with _session(config_file, state) as session:
        amount = session.run(session.engine.balance(user_id))
        console.print(f"[bold]{user_id}[/bold]: {amount} credit(s)")


@app.command()
def history(
    user_id: Annotated[str, typer.Argument(help="User whose transactions are listed")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of transactions")] = 50,
    offset: Annotated[int, typer.Option("--offset", help="Transactions to skip")] = 0,
    config_file: ConfigOption = None,
    state: StateOption = None,
):
    """
    List a user's credit transactions, newest first.
    """
    with _session(config_file, state) as session:
        transactions = session.run(session.engine.history(user_id, limit=limit, offset=offset))

        if not transactions:
            console.print(f"[yellow]No transactions for {user_id}.[/yellow]")
            return

        tz = session.config.timezone
        table = Table(
            title=f"Transactions of {user_id}",
            show_header=True,
            header_style="bold cyan"
        )
        table.add_column("Date", style="dim")
        table.add_column("Reason")
        table.add_column("Amount", justify="right")
        table.add_column("Balance", justify="right", style="bold")
        table.add_column("Description")

        for tx in transactions:
            color = "green" if tx.amount > 0 else "red"
            table.add_row(
                pendulum.instance(tx.created_at).in_timezone(tz).format("DD.MM.YYYY HH:mm"),
                tx.reason.value,
                f"[{color}]{tx.amount:+d}[/{color}]",
                str(tx.balance_after),
                tx.description,
            )

        console.print()
        console.print(table)
        console.print()


@app.command()
def grant(
    user_id: Annotated[str, typer.Argument(help="User receiving the credits")],
    amount: Annotated[Optional[int], typer.Option("--amount", "-a", help="Credits to grant")] = None,
    config_file: ConfigOption = None,
    state: StateOption = None,
):
    """
    Grant free credits, opening the user's account if needed.
    """
    with _session(config_file, state) as session:
        session.store.open_account(user_id)
        transaction = session.run(session.engine.grant_free_credits(user_id, amount))
        session.save()
        console.print(
            f"[green]✓ Granted {transaction.amount} credit(s) to {user_id}, "
            f"balance now {transaction.balance_after}.[/green]"
        )


@app.command()
def verify(
    user_id: Annotated[Optional[str], typer.Argument(help="Only verify this user's ledger")] = None,
    config_file: ConfigOption = None,
    state: StateOption = None,
):
    """
    Replay ledgers and look for orphaned appointments.
    """
    with _session(config_file, state) as session:
        if user_id:
            if session.run(session.engine.verify(user_id)):
                console.print(f"[green]✓ Ledger of {user_id} is consistent.[/green]")
                return
            console.print(f"[bold red]✗ Ledger of {user_id} does not match its balance.[/bold red]")
            raise typer.Exit(1)

        report = session.run(session.engine.run_integrity_check())

        table = Table(title="Integrity check", show_header=True, header_style="bold cyan")
        table.add_column("Check", style="bold yellow")
        table.add_column("Result")
        table.add_row("Accounts checked", str(report.checked_accounts))
        table.add_row("Ledger mismatches", ", ".join(report.ledger_mismatches) or "-")
        table.add_row(
            "Orphaned appointments",
            ", ".join(appointment.id for appointment in report.orphaned_appointments) or "-",
        )
        console.print()
        console.print(table)
        console.print()

        if not report.ok:
            raise typer.Exit(1)


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]mentorbook[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
