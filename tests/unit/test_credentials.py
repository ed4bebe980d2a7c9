"""Tests for password hashing and wallet signature verification."""

import pytest

from gatehouse.auth.credentials import (
    CredentialVerifier,
    SignatureMismatch,
    check_password,
    hash_password,
    recover_signer,
)
from gatehouse.auth.nonces import ChallengeExpired, build_challenge_message

ISSUED_AT = 1_700_000_000_000
TTL_MS = 300_000


class FakeClock:
    def __init__(self, now: int = ISSUED_AT):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier(clock):
    v = CredentialVerifier(rounds=10, workers=2, clock=clock)
    yield v
    v.close()


def _message(address: str) -> str:
    return build_challenge_message(address, "ab" * 16, ISSUED_AT, ISSUED_AT + TTL_MS)


class TestPasswordHashing:
    def test_hash_is_bcrypt(self):
        hashed = hash_password("Passw0rd!", rounds=10)
        assert hashed.startswith("$2b$10$")
        assert check_password("Passw0rd!", hashed)
        assert not check_password("passw0rd!", hashed)

    def test_salted(self):
        assert hash_password("same", rounds=10) != hash_password("same", rounds=10)

    def test_empty_hash_never_matches(self):
        assert check_password("", "") is False
        assert check_password("anything", "") is False

    def test_malformed_hash_never_matches(self):
        assert check_password("anything", "not-a-bcrypt-hash") is False


class TestCredentialVerifier:
    async def test_verify_password(self, verifier):
        hashed = await verifier.hash_password("Passw0rd!")
        assert await verifier.verify_password("Passw0rd!", hashed) is True
        assert await verifier.verify_password("wrong", hashed) is False

    async def test_verify_password_refuses_empty_hash(self, verifier):
        assert await verifier.verify_password("", "") is False

    async def test_wallet_signature_recovers_signer(self, verifier, wallet, signer):
        message = _message(wallet.address)
        recovered = await verifier.verify_wallet_signature(
            wallet.address, signer(message), message, ISSUED_AT, TTL_MS
        )
        assert recovered == wallet.address

    async def test_address_comparison_ignores_case(self, verifier, wallet, signer):
        message = _message(wallet.address)
        recovered = await verifier.verify_wallet_signature(
            wallet.address.lower(), signer(message), message, ISSUED_AT, TTL_MS
        )
        assert recovered.lower() == wallet.address.lower()

    async def test_signature_without_prefix(self, verifier, wallet, signer):
        message = _message(wallet.address)
        signature = signer(message)[2:]
        recovered = await verifier.verify_wallet_signature(
            wallet.address, signature, message, ISSUED_AT, TTL_MS
        )
        assert recovered == wallet.address

    async def test_other_signer_is_rejected(self, verifier, wallet, other_wallet, signer):
        message = _message(wallet.address)
        with pytest.raises(SignatureMismatch):
            await verifier.verify_wallet_signature(
                wallet.address, signer(message, other_wallet.key), message, ISSUED_AT, TTL_MS
            )

    async def test_altered_message_is_rejected(self, verifier, wallet, signer):
        signature = signer(_message(wallet.address))
        altered = _message(wallet.address).replace("Nonce: ", "Nonce: 0")
        with pytest.raises(SignatureMismatch):
            await verifier.verify_wallet_signature(
                wallet.address, signature, altered, ISSUED_AT, TTL_MS
            )

    async def test_undecodable_signature(self, verifier, wallet):
        with pytest.raises(SignatureMismatch):
            await verifier.verify_wallet_signature(
                wallet.address, "0x" + "ab" * 65, _message(wallet.address), ISSUED_AT, TTL_MS
            )

    async def test_expired_challenge(self, verifier, wallet, signer, clock):
        message = _message(wallet.address)
        clock.now = ISSUED_AT + TTL_MS
        with pytest.raises(ChallengeExpired):
            await verifier.verify_wallet_signature(
                wallet.address, signer(message), message, ISSUED_AT, TTL_MS
            )


class TestRecoverSigner:
    def test_recovers_checksum_address(self, wallet, signer):
        message = "hello"
        assert recover_signer(message, signer(message)) == wallet.address

    def test_garbage(self):
        with pytest.raises(SignatureMismatch):
            recover_signer("hello", "0x1234")
