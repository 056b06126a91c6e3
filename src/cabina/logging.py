"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/cabina/logging.py`.
Configuración de structlog y contexto estándar de sesión.

Componentes detectados:
  - setup_logging
  - bind_context
  - obfuscate_identifier, redact_identifier_fields

Notas:
- Nunca registrar contraseñas ni sus digests.

======================== ENGLISH ========================
File: `src/cabina/logging.py`.
structlog setup and standard session context.

Detected components:
  - setup_logging
  - bind_context
  - obfuscate_identifier, redact_identifier_fields

Notes:
- Never log passwords or their digests.
"""

from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog

REDACTED_FIELDS = ("wallet", "tx_hash")


def setup_logging(
    log_level: str,
    storage_path: Optional[Path] = None,
    redact_identifiers: bool = True,
) -> structlog.BoundLogger:
    """Configura structlog y handlers de consola/archivo.

    English: Configure structlog and console/file handlers. The file handler is
    only installed when ``storage_path`` is given; ``redact_identifiers``
    installs :func:`redact_identifier_fields` so wallets and hashes are
    shortened in every rendered event.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if storage_path is not None:
        log_dir = Path(storage_path) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            TimedRotatingFileHandler(
                log_dir / "cabina.log",
                when="midnight",
                backupCount=30,
                encoding="utf-8",
            )
        )

    logging.basicConfig(
        level=log_level.upper(),
        handlers=handlers,
        format="%(message)s",
    )

    processors: list[Any] = [structlog.processors.add_log_level]
    if redact_identifiers:
        processors.append(redact_identifier_fields)
    processors.extend(
        [
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(log_level.upper())),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def obfuscate_identifier(value: Optional[str]) -> str:
    """Return shortened identifier for logs without exposing full values.

    Devuelve identificador acortado para logs sin exponer valores completos.
    """
    if not value:
        return ""
    if len(value) <= 10:
        return value
    return f"{value[:6]}…{value[-4:]}"


def redact_identifier_fields(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Procesador structlog que acorta ``wallet`` y ``tx_hash``."""
    for field in REDACTED_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str):
            event_dict[field] = obfuscate_identifier(value)
    return event_dict


def bind_context(
    logger: structlog.BoundLogger,
    room_code: Optional[str] = None,
    wallet: Optional[str] = None,
    tx_hash: Optional[str] = None,
) -> structlog.BoundLogger:
    """Adjunta contexto estándar al logger.

    English: Bind standard session context to the logger. Identifiers are
    bound in full; redaction happens in the configured processor chain.
    """
    context: dict[str, Any] = {}
    if room_code:
        context["room_code"] = room_code
    if wallet:
        context["wallet"] = wallet
    if tx_hash:
        context["tx_hash"] = tx_hash
    return logger.bind(**context)
