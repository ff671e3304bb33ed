import json
import os
from typing import Any

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import SecurityConfig


class CryptoManager:
    """
    Handles symmetrical encryption for sensitive records
    using AES-256-GCM with a key derived from the configured secret.
    """

    def __init__(self, config: SecurityConfig):
        secret = config.DATA_ENCRYPTION_SECRET
        if not secret:
            raise ValueError("Invalid Encryption Key configuration: empty secret")
        self.nonce_size = config.AES_NONCE_SIZE
        # HKDF turns an arbitrary-length secret into a 256-bit key
        self.key = HKDF(
            algorithm=hashes.SHA256(),
            length=config.AES_KEY_SIZE,
            salt=config.CODEC_KEY_SALT,
            info=config.CODEC_KEY_INFO,
            backend=default_backend(),
        ).derive(secret.encode())

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypts data using AES-GCM.
        IV is generated randomly for every operation.
        Returns: iv_hex:ciphertext_hex:tag_hex
        """
        iv = os.urandom(self.nonce_size)
        encryptor = Cipher(
            algorithms.AES(self.key),
            modes.GCM(iv),
            backend=default_backend()
        ).encryptor()

        ciphertext = encryptor.update(plaintext.encode()) + encryptor.finalize()

        # Format: IV:Ciphertext:AuthTag
        return f"{iv.hex()}:{ciphertext.hex()}:{encryptor.tag.hex()}"

    def decrypt(self, encrypted_payload: str) -> str:
        """
        Decrypts AES-GCM payload.
        Verifies authentication tag to prevent tampering.
        """
        try:
            iv_hex, ct_hex, tag_hex = encrypted_payload.split(':')
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
            tag = bytes.fromhex(tag_hex)

            decryptor = Cipher(
                algorithms.AES(self.key),
                modes.GCM(iv, tag),
                backend=default_backend()
            ).decryptor()

            return (decryptor.update(ciphertext) + decryptor.finalize()).decode()
        except Exception:
            raise ValueError("Decryption failed or data tampered")

    def keyed_digest(self, value: str) -> str:
        """Stable, non-reversible HMAC-SHA256 of a value under the record key"""
        h = hmac.HMAC(self.key, hashes.SHA256(), backend=default_backend())
        h.update(value.encode())
        return h.finalize().hex()


class RecordCodec:
    """Reversible transform applied by the store to sensitive records."""

    def __init__(self, crypto: CryptoManager):
        self.crypto = crypto

    def encode(self, value: Any) -> str:
        return self.crypto.encrypt(json.dumps(value, separators=(',', ':')))

    def decode(self, payload: str) -> Any:
        # ValueError covers both tampering and malformed JSON
        return json.loads(self.crypto.decrypt(payload))

    def subject_key(self, identifier: str) -> str:
        return self.crypto.keyed_digest(identifier)


class BackupCodeHasher:
    """Argon2id hashes for single-use backup codes. Plaintext is never stored."""

    def __init__(self, config: SecurityConfig):
        self.ph = PasswordHasher(
            time_cost=config.ARGON2_TIME_COST,
            memory_cost=config.ARGON2_MEMORY_COST,
            parallelism=config.ARGON2_PARALLELISM,
            hash_len=config.ARGON2_HASH_LENGTH,
            salt_len=config.ARGON2_SALT_LENGTH,
        )

    def hash(self, code: str) -> str:
        return self.ph.hash(code)

    def verify(self, code_hash: str, code: str) -> bool:
        try:
            return self.ph.verify(code_hash, code)
        except (VerificationError, InvalidHashError):
            return False
