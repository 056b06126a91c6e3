# Config Module
# AUTO-DOC-INDEX
#
# ES: Índice rápido
#   1) Propósito del módulo
#   2) Componentes principales
#   3) Puntos de extensión
#
# EN: Quick index
#   1) Module purpose
#   2) Main components
#   3) Extension points
#
# Secciones / Sections:
#   - Configuración / Configuration
#   - Validación / Validation

"""Configuración segura y validada de Cabina.

Secure and validated Cabina configuration.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import AnyUrl, Field, TypeAdapter, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

_ENV_PATH = Path(".env")
_ENV_LOCAL_PATH = Path(".env.local")
# Seguridad: Cargar variables sensibles desde .env y .env.local. / Security: Load sensitive vars from .env/.env.local.
load_dotenv(_ENV_PATH, override=False)
load_dotenv(_ENV_LOCAL_PATH, override=False)

PRIVATE_KEY_ENV = "CABINA_PRIVATE_KEY"
_PLACEHOLDER_KEYS = {"", "0x...", "REPLACE_ME"}

BOOLEAN_EXACT_KEYS = {
    "supports_atomic_create",
    "log_redact_identifiers",
}


class CabinaSettings(BaseSettings):
    """Variables de entorno y archivo .env para Cabina.

    English: Environment variables and .env file for Cabina. Instances are
    passed explicitly to every component constructor.
    """

    model_config = SettingsConfigDict(
        env_prefix="CABINA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    rpc_url: str = "http://127.0.0.1:8545"
    contract_address: str = "0x0000000000000000000000000000000000000000"
    chain_id: int = Field(default=31337, ge=1)
    relay_url: Optional[str] = None
    relay_timeout_seconds: float = Field(default=30.0, gt=0)
    confirmations: int = Field(default=1, ge=1)
    receipt_timeout_seconds: float = Field(default=120.0, gt=0)
    load_timeout_seconds: float = Field(default=15.0, gt=0)
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    countdown_interval_seconds: float = Field(default=1.0, gt=0)
    password_cache_ttl_seconds: float = Field(default=1800.0, gt=0)
    participation_rate_estimate: float = Field(default=0.7, ge=0, le=1)
    supports_atomic_create: bool = True
    log_redact_identifiers: bool = True
    store_path: Optional[Path] = None
    log_level: str = "INFO"

    @field_validator("rpc_url", "relay_url")
    @classmethod
    def _validate_url(cls, value: Optional[str]) -> Optional[str]:
        """Validate URLs without changing the stored type."""
        if value is None:
            return value
        TypeAdapter(AnyUrl).validate_python(value)
        return value

    @field_validator("contract_address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned.startswith("0x") or len(cleaned) != 42:
            raise ValueError("contract_address must be a 0x-prefixed 20-byte hex address")
        int(cleaned[2:], 16)
        return cleaned


def resolve_private_key(raw_value: Optional[str] = None) -> Optional[str]:
    """Resolve the wallet key from the ``CABINA_PRIVATE_KEY`` env var.

    The *raw_value* from YAML config is ignored so secrets never live in
    version-controlled files; a non-placeholder value only logs a warning.

    Resuelve la clave privada desde ``CABINA_PRIVATE_KEY``. El valor en YAML
    se ignora.
    """
    env_key = os.getenv(PRIVATE_KEY_ENV, "").strip()
    if env_key:
        return env_key
    if raw_value and str(raw_value).strip() not in _PLACEHOLDER_KEYS:
        logger.warning("private_key_in_config_ignored", hint=f"set {PRIVATE_KEY_ENV} instead")
    return None


def _iter_non_boolean_flags(node: Any, prefix: str = "") -> list[str]:
    """Collect YAML paths where binary flags are not bool.

    Recolecta rutas YAML donde flags binarios no son bool.
    """
    errors: list[str] = []
    if isinstance(node, dict):
        for key, value in node.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            key_text = str(key)
            expects_bool = key_text in BOOLEAN_EXACT_KEYS or key_text.endswith("_enabled")
            if expects_bool and not isinstance(value, bool):
                errors.append(path)
            errors.extend(_iter_non_boolean_flags(value, path))
    return errors


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping or raise a user-facing error.

    Carga un mapa YAML o lanza un error orientado al usuario.
    """
    if not path.exists():
        raise FileNotFoundError(f"Falta {path.as_posix()} (Missing {path.as_posix()}).")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"{path.name} tiene errores de sintaxis YAML ({path.name} has YAML syntax errors).") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"{path.name} debe ser un mapa YAML ({path.name} must be a YAML mapping).")
    return raw


def load_settings(config_path: Optional[Path] = None) -> CabinaSettings:
    """Carga y valida configuración, fallando con detalle.

    English:
        Load and validate configuration. Values from the optional YAML file
        take precedence over environment variables; a ``private_key`` entry in
        YAML is ignored.

    Args:
        config_path: Optional YAML mapping with ``CabinaSettings`` field names.

    Returns:
        CabinaSettings: Validated settings.

    Raises:
        ValueError: When the YAML or the resulting settings are invalid.
    """
    overrides: Dict[str, Any] = {}
    if config_path is not None:
        overrides = _load_yaml_mapping(Path(config_path))
        bool_errors = _iter_non_boolean_flags(overrides)
        if bool_errors:
            joined = ", ".join(sorted(bool_errors))
            raise ValueError(
                f"{Path(config_path).as_posix()}: los siguientes campos binarios deben usar true/false "
                f"(binary fields must use true/false without quotes): {joined}."
            )
        resolve_private_key(overrides.pop("private_key", None))

    try:
        settings = CabinaSettings(**overrides)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
    logger.debug("settings_loaded", source=str(config_path) if config_path else "env")
    return settings
