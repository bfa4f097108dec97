"""
Login payload cipher.

The bank's web client encrypts the login payload with a vendor-supplied
module before posting it. That module is consumed as a black box:

    encrypt(payload, key_material, version) -> ciphertext

``key_material`` is the opaque binary the bank serves to its web client and
``version`` selects the cipher revision. A compatible implementation is an
integration dependency of the deployment; it is plugged in through
``cipher_entrypoint`` ("package.module:function").
"""

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

from p2p_settlement.bank.captcha import import_entrypoint
from p2p_settlement.exceptions import CipherUnavailableError

logger = logging.getLogger("p2p_settlement.cipher")

CipherFunction = Callable[[dict[str, Any], bytes, str], Union[str, Awaitable[str]]]


class CipherGateway(ABC):
    """Opaque encryption of the login payload."""

    @abstractmethod
    async def encrypt(self, payload: dict[str, Any], key_material: bytes, version: str) -> str:
        """
        Encrypt a login payload.

        Raises:
            CipherUnavailableError: If no compatible cipher can be invoked.
        """
        ...


class CallableCipherGateway(CipherGateway):
    """Adapts a plain (sync or async) function to the CipherGateway contract."""

    def __init__(self, func: CipherFunction):
        self._func = func

    async def encrypt(self, payload: dict[str, Any], key_material: bytes, version: str) -> str:
        result = self._func(payload, key_material, version)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, str) or not result:
            raise CipherUnavailableError("Cipher returned no ciphertext")
        return result


class UnavailableCipherGateway(CipherGateway):
    """Placeholder used when no cipher entrypoint is configured."""

    async def encrypt(self, payload: dict[str, Any], key_material: bytes, version: str) -> str:
        raise CipherUnavailableError(
            "No login cipher configured; set CIPHER_ENTRYPOINT to a compatible implementation"
        )


def load_cipher_gateway(entrypoint: Optional[str]) -> CipherGateway:
    if not entrypoint:
        logger.warning("No cipher entrypoint configured, bank login will fail")
        return UnavailableCipherGateway()
    return CallableCipherGateway(import_entrypoint(entrypoint))
