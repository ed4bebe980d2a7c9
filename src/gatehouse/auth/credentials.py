"""Password hashing and wallet signature checks.

Both are CPU-bound, so the async verifier runs them on a small dedicated
thread pool instead of the event loop.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import bcrypt
from eth_account import Account
from eth_account.messages import encode_defunct

from gatehouse.auth.nonces import ChallengeExpired, now_ms
from gatehouse.common.exceptions import InvalidSignatureError
from gatehouse.common.logging import get_logger

logger = get_logger("auth.credentials")

# bcrypt only looks at the first 72 bytes; longer input is refused upstream.
BCRYPT_MAX_BYTES = 72


class SignatureMismatch(InvalidSignatureError):
    """The signature did not recover to the claimed address."""


def hash_password(plaintext: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds)).decode("ascii")


def check_password(plaintext: str, hashed: str) -> bool:
    """Constant-time bcrypt comparison. Empty or malformed hashes never match."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("ascii"))
    except (ValueError, UnicodeEncodeError):
        return False


def recover_signer(message: str, signature: str) -> str:
    """Recover the address that ``personal_sign``-ed ``message``.

    Raises SignatureMismatch if the signature cannot be decoded or recovered.
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as exc:
        # eth-account surfaces bad input as several unrelated error types.
        raise SignatureMismatch() from exc


class CredentialVerifier:
    """Async front for bcrypt and ECDSA recovery on a bounded pool."""

    def __init__(
        self,
        rounds: int = 12,
        workers: int = 4,
        clock: Callable[[], int] = now_ms,
    ):
        self.rounds = rounds
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="gatehouse-crypto"
        )

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def hash_password(self, plaintext: str) -> str:
        return await self._run(hash_password, plaintext, self.rounds)

    async def verify_password(self, plaintext: str, hashed: str) -> bool:
        if not hashed:
            return False
        return await self._run(check_password, plaintext, hashed)

    async def verify_wallet_signature(
        self,
        address: str,
        signature: str,
        message: str,
        issued_at: int,
        ttl_ms: int,
    ) -> str:
        """Check a challenge signature. Returns the recovered address.

        Raises ChallengeExpired past ``issued_at + ttl_ms`` and
        SignatureMismatch when the signer is not ``address``.
        """
        if self._clock() >= issued_at + ttl_ms:
            raise ChallengeExpired()
        recovered = await self._run(recover_signer, message, signature)
        if recovered.lower() != address.lower():
            logger.debug(
                "Signature recovered to a different address",
                extra={"context": {"claimed": address.lower(), "recovered": recovered.lower()}},
            )
            raise SignatureMismatch()
        return recovered

    def close(self) -> None:
        self._executor.shutdown(wait=False)
