"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/cabina/cli.py`.
Interfaz de línea de comandos para listar, crear y unirse a salas.

Componentes detectados:
  - main
  - rooms, room, create, join, status, history, new_code

Notas:
- Votar no se expone aquí: requiere un colaborador de cifrado.

======================== ENGLISH ========================
File: `src/cabina/cli.py`.
Command line interface to list, create and join rooms.

Detected components:
  - main
  - rooms, room, create, join, status, history, new_code

Notes:
- Voting is not exposed here: it needs an encryption collaborator.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Coroutine, List, Optional

import typer

from .config import CabinaSettings, load_settings, resolve_private_key
from .errors import CabinaError
from .ledger import LedgerClient, WalletSigner
from .logging import setup_logging
from .models import CandidateDraft, Room, generate_room_code
from .relay import GaslessRelay
from .service import JoinStrategy, VotingRoomService
from .store import JsonFileStore, KeyValueStore, MemoryStore, vote_history

app = typer.Typer(help="Cabina Engine CLI")


def _settings(ctx: typer.Context) -> CabinaSettings:
    return ctx.obj["settings"]


def _store(settings: CabinaSettings) -> KeyValueStore:
    if settings.store_path is not None:
        return JsonFileStore(settings.store_path)
    return MemoryStore()


def _service(settings: CabinaSettings, gasless: bool = False) -> VotingRoomService:
    private_key = resolve_private_key()
    signer = WalletSigner.from_key(private_key) if private_key else None
    ledger = LedgerClient(settings, signer=signer)
    relay = None
    if gasless:
        try:
            relay = GaslessRelay(settings, ledger.contract_address)
        except ValueError as exc:
            typer.echo(f"Error: {exc}", err=True)
            raise typer.Exit(code=2) from exc
    return VotingRoomService(ledger, settings, _store(settings), relay=relay)


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    try:
        return asyncio.run(coro)
    except CabinaError as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc


def _room_line(room: Room) -> str:
    lock = " [password]" if room.has_password else ""
    return f"{room.code}  {room.title}  {room.participant_count}/{room.max_participants}{lock}"


def _parse_candidate(raw: str) -> CandidateDraft:
    name, _, description = raw.partition("|")
    return CandidateDraft(name=name, description=description.strip())


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML settings file."),
) -> None:
    """Interfaz de línea de comandos de Cabina.

    English: Cabina command line interface.
    """
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    setup_logging(settings.log_level, redact_identifiers=settings.log_redact_identifiers)
    ctx.obj = {"settings": settings}


@app.command()
def rooms(
    ctx: typer.Context,
    offset: Optional[int] = typer.Option(None, help="Paginate from this offset instead of listing active rooms."),
    limit: int = typer.Option(10, min=1, help="Page size."),
) -> None:
    """Lista salas activas o una página de salas."""
    service = _service(_settings(ctx))
    if offset is None:
        found = _run(service.directory.get_active_rooms())
    else:
        found = _run(service.directory.get_rooms_paginated(offset, limit))
    if not found:
        typer.echo("No rooms found.")
        return
    for entry in found:
        typer.echo(_room_line(entry))


@app.command()
def room(ctx: typer.Context, code: str) -> None:
    """Muestra una sala y sus candidatos en JSON."""
    service = _service(_settings(ctx))

    async def fetch() -> Optional[dict]:
        directory = service.directory
        record = await directory.get_room(code)
        if record is None:
            return None
        candidates = await directory.get_candidates(code, record)
        return {
            "room": record.model_dump(exclude={"password_hash"}),
            "candidates": [candidate.model_dump() for candidate in candidates],
        }

    payload = _run(fetch())
    if payload is None:
        typer.echo(f"Room {code} not found.", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def create(
    ctx: typer.Context,
    title: str = typer.Option(..., help="Room title."),
    candidate: List[str] = typer.Option(..., "--candidate", help="Candidate as 'name' or 'name|description'."),
    description: str = typer.Option("", help="Room description."),
    max_participants: int = typer.Option(10, min=1),
    duration_hours: float = typer.Option(24.0, min=0.01),
    password: Optional[str] = typer.Option(None, help="Protect the room with a password."),
    code: Optional[str] = typer.Option(None, help="Room code; generated when omitted."),
) -> None:
    """Crea una sala con sus candidatos en una sola transacción."""
    settings = _settings(ctx)
    service = _service(settings)
    room_code = code or generate_room_code()
    try:
        drafts = [_parse_candidate(raw) for raw in candidate]
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    created = _run(
        service.create_room_with_candidates(
            room_code,
            title,
            description,
            max_participants,
            duration_hours,
            drafts,
            has_password=bool(password),
            password=password or "",
        )
    )
    typer.echo(service.last_message)
    if not created:
        raise typer.Exit(code=1)
    typer.echo(room_code)


@app.command()
def join(
    ctx: typer.Context,
    code: str,
    password: str = typer.Option("", help="Room password, if any."),
    gasless: bool = typer.Option(False, "--gasless", help="Let the relay pay the fee."),
) -> None:
    """Une la billetera configurada a una sala."""
    service = _service(_settings(ctx), gasless=gasless)
    strategy = JoinStrategy.GASLESS if gasless else JoinStrategy.SELF_PAID
    outcome = _run(
        service.join_room(
            code,
            password,
            strategy,
            on_submitted=lambda tx_hash: typer.echo(f"Submitted {tx_hash}"),
        )
    )
    typer.echo(f"{service.last_message} (block {outcome.block_number})")


@app.command()
def status(ctx: typer.Context, code: str) -> None:
    """Estado de voto de la billetera configurada."""
    service = _service(_settings(ctx))

    async def fetch() -> dict:
        voting = await service.check_voting_status(code)
        total, estimated = await service.get_total_votes(code)
        return {**voting.model_dump(), "total_votes": total, "estimated": estimated}

    typer.echo(json.dumps(_run(fetch()), indent=2))


@app.command()
def history(
    ctx: typer.Context,
    wallet: Optional[str] = typer.Option(None, help="Wallet address; defaults to the configured signer."),
) -> None:
    """Votos recordados localmente para una billetera."""
    settings = _settings(ctx)
    service = _service(settings)
    address = wallet or service.ledger.wallet_address
    if not address:
        typer.echo("Error: no wallet given and no signer configured.", err=True)
        raise typer.Exit(code=2)
    entries = vote_history(service.store, address)
    if not entries:
        typer.echo("No remembered votes.")
        return
    for entry in entries:
        typer.echo(f"{entry.room_code}  candidate={entry.candidate_id}  at={int(entry.voted_at)}")


@app.command("new-code")
def new_code() -> None:
    """Genera un código de sala nuevo."""
    typer.echo(generate_room_code())


if __name__ == "__main__":
    app()
