"""Cryptographic utilities for keeping the wallet seed encrypted at rest.

Uses Fernet (AES-128-CBC with HMAC) for symmetric encryption.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from custody.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Fernet tokens are base64 and always start with this version prefix
FERNET_PREFIX = "gAAAAA"


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


class SeedEncryptor:
    """Encrypts and decrypts the BIP39 seed phrase using Fernet.

    Usage:
        encryptor = SeedEncryptor(master_key)
        encrypted = encryptor.encrypt("abandon abandon ...")
        seed = encryptor.decrypt(encrypted)
    """

    def __init__(self, master_key: str):
        """Initialize with master encryption key.

        Args:
            master_key: Base64-encoded Fernet key (32 bytes)

        Raises:
            ConfigurationError: If the key is not a valid Fernet key
        """
        try:
            self._fernet = Fernet(master_key.encode())
        except ValueError as e:
            raise ConfigurationError(f"MASTER_KEY is not a valid Fernet key: {e}")

    def encrypt(self, secret: str) -> str:
        """Encrypt a secret string."""
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a Fernet token.

        Raises:
            ConfigurationError: If decryption fails (wrong key or corrupted data)
        """
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # Never include the token itself in the error
            raise ConfigurationError("Failed to decrypt secret: wrong MASTER_KEY or corrupted value")

    def rotate_key(self, new_key: str, token: str) -> str:
        """Re-encrypt a token under a new master key."""
        plaintext = self.decrypt(token)
        return SeedEncryptor(new_key).encrypt(plaintext)


def is_encrypted(value: str) -> bool:
    """Check whether a value looks like a Fernet token."""
    return value.startswith(FERNET_PREFIX)


def encrypt_secret(secret: str, master_key: str) -> str:
    """Convenience function to encrypt a secret with a master key."""
    return SeedEncryptor(master_key).encrypt(secret)


def decrypt_secret(token: str, master_key: str) -> str:
    """Convenience function to decrypt a Fernet token.

    Raises:
        ConfigurationError: If the value is not a Fernet token or cannot be decrypted
    """
    if not is_encrypted(token):
        raise ConfigurationError("WALLET_SEED_ENCRYPTED does not look like a Fernet token")

    logger.debug("Decrypting wallet seed")
    return SeedEncryptor(master_key).decrypt(token)
