"""Unión patrocinada (sin gas) a una sala mediante un relay.

Fee-sponsored ("gasless") room join through a relay service: the wallet signs
an authorization message, the relay submits the transaction and pays the fee.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import CabinaSettings
from .errors import REASON_MESSAGES, SignatureRejected, ValidationReason, classify_revert
from .ledger import Signer
from .logging import bind_context
from .models import GaslessErrorKind, GaslessJoinResult

logger = structlog.get_logger(__name__)

AUTHORIZATION_TTL_SECONDS = 600
RELAY_UNREACHABLE_MESSAGE = "Relay service is unreachable. Please try again."
JOIN_REVERTED_MESSAGE = "The relay could not complete the join."
UNEXPECTED_MESSAGE = "An unexpected error occurred. Please try again."
DECLINED_MESSAGE = REASON_MESSAGES[ValidationReason.SIGNATURE_DECLINED]


class RelayUnavailable(Exception):
    """Respuesta reintentable del relay (429/5xx). / Retryable relay response."""


class RelayRejected(Exception):
    """El relay o el contrato rechazó la unión. / Relay or contract rejected the join."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def build_authorization_message(
    room_code: str,
    user_address: str,
    contract_address: str,
    chain_id: int,
    nonce: str,
    deadline: int,
) -> str:
    """Mensaje que firma la billetera para autorizar la unión.

    English: Message the wallet signs to authorize the sponsored join.
    """
    return "\n".join(
        [
            "Cabina gasless join",
            f"room: {room_code}",
            f"user: {user_address}",
            f"contract: {contract_address}",
            f"chain: {chain_id}",
            f"nonce: {nonce}",
            f"deadline: {deadline}",
        ]
    )


@retry(
    retry=retry_if_exception_type((httpx.TransportError, RelayUnavailable)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)
async def post_join(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Envía la solicitud al relay con reintentos.

    English: POST the join request, retrying transport errors and 429/5xx.
    """
    start = time.monotonic()
    response = await client.post(url, json=payload)
    elapsed = round(time.monotonic() - start, 3)
    if response.status_code == 429 or response.status_code >= 500:
        logger.warning("relay_retryable_status", status_code=response.status_code, elapsed_seconds=elapsed)
        raise RelayUnavailable(f"Retryable status: {response.status_code}")

    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    if response.status_code >= 400 or body.get("success") is False or body.get("error"):
        reason = str(body.get("reason") or body.get("error") or f"status {response.status_code}")
        logger.info("relay_rejected", status_code=response.status_code, elapsed_seconds=elapsed)
        raise RelayRejected(reason)

    logger.info("relay_accepted", status_code=response.status_code, elapsed_seconds=elapsed)
    return body


class GaslessRelay:
    """Ejecuta uniones patrocinadas.

    English:
        Executes fee-sponsored joins. Each failure category maps to its own
        message: a declined signature is terminal but user-recoverable, an
        unreachable relay is retryable, a revert is terminal and informative.
    """

    def __init__(
        self,
        settings: CabinaSettings,
        contract_address: str,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not settings.relay_url:
            raise ValueError("relay_url is required for gasless joins")
        self.settings = settings
        self.contract_address = contract_address
        self.join_url = settings.relay_url.rstrip("/") + "/join"
        self._client = client
        self._clock = clock

    def build_payload(self, room_code: str, password: str, user_address: str, signer: Signer) -> Dict[str, Any]:
        nonce = secrets.token_hex(16)
        deadline = int(self._clock()) + AUTHORIZATION_TTL_SECONDS
        message = build_authorization_message(
            room_code,
            user_address,
            self.contract_address,
            self.settings.chain_id,
            nonce,
            deadline,
        )
        signature = signer.sign_message(message)
        return {
            "roomCode": room_code,
            "password": password,
            "userAddress": user_address,
            "signature": signature,
            "nonce": nonce,
            "deadline": deadline,
            "contractAddress": self.contract_address,
            "chainId": self.settings.chain_id,
        }

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is not None:
            return await post_join(self._client, self.join_url, payload)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.settings.relay_timeout_seconds)) as client:
            return await post_join(client, self.join_url, payload)

    async def execute_gasless_join(
        self,
        room_code: str,
        password: str,
        user_address: str,
        signer: Signer,
    ) -> GaslessJoinResult:
        log = bind_context(logger, room_code=room_code, wallet=user_address)
        try:
            payload = self.build_payload(room_code, password, user_address, signer)
        except SignatureRejected:
            log.info("gasless_signature_declined")
            return GaslessJoinResult(success=False, error=DECLINED_MESSAGE, error_kind=GaslessErrorKind.DECLINED)

        try:
            body = await self._post(payload)
        except (httpx.TransportError, RelayUnavailable) as exc:
            log.warning("gasless_relay_unreachable", error=str(exc))
            return GaslessJoinResult(
                success=False,
                error=RELAY_UNREACHABLE_MESSAGE,
                error_kind=GaslessErrorKind.UNREACHABLE,
            )
        except RelayRejected as exc:
            reason = classify_revert(exc.message)
            message = REASON_MESSAGES[reason] if reason else JOIN_REVERTED_MESSAGE
            log.info("gasless_join_reverted", reason=reason.value if reason else "unknown")
            return GaslessJoinResult(
                success=False,
                error=message,
                error_kind=GaslessErrorKind.REVERTED,
                reason=reason,
            )
        except Exception as exc:  # noqa: BLE001
            log.error("gasless_join_unexpected", error_type=type(exc).__name__)
            return GaslessJoinResult(success=False, error=UNEXPECTED_MESSAGE, error_kind=GaslessErrorKind.UNEXPECTED)

        tx_hash = body.get("transactionHash") or body.get("txHash")
        if not tx_hash:
            log.error("gasless_join_missing_hash")
            return GaslessJoinResult(success=False, error=UNEXPECTED_MESSAGE, error_kind=GaslessErrorKind.UNEXPECTED)
        log.info("gasless_join_submitted", tx_hash=tx_hash)
        return GaslessJoinResult(success=True, transaction_hash=tx_hash)
