"""Interfaz del colaborador de cifrado homomórfico.

Interface of the homomorphic encryption collaborator. The primitive itself is
an opaque black box; this module only fixes the shape the engine consumes.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Protocol, Union

from .models import EncryptedBallot

BALLOT_VALUE = 1


class EncryptedInput(Protocol):
    def add(self, value: int) -> Any: ...

    def encrypt(self) -> Union[EncryptedBallot, Awaitable[EncryptedBallot]]: ...


class Encryptor(Protocol):
    def create_encrypted_input(self, contract_address: str, voter_address: str) -> EncryptedInput: ...


async def encrypt_ballot(encryptor: Encryptor, contract_address: str, voter_address: str) -> EncryptedBallot:
    """Cifra una boleta ligada a (contrato, votante).

    English:
        Encrypts one ballot bound to ``(contract_address, voter_address)``.
        The encrypted value is always ``1``; the candidate is chosen by the
        ``vote`` call. Synchronous ``encrypt()`` implementations are CPU heavy
        and run in a worker thread.
    """
    encrypted_input = encryptor.create_encrypted_input(contract_address, voter_address)
    encrypted_input.add(BALLOT_VALUE)
    if inspect.iscoroutinefunction(encrypted_input.encrypt):
        result = await encrypted_input.encrypt()
    else:
        result = await asyncio.to_thread(encrypted_input.encrypt)
        if inspect.isawaitable(result):
            result = await result
    if isinstance(result, EncryptedBallot):
        return result
    return EncryptedBallot.model_validate(result)
