"""Opaque holder for derived private keys.

A SecretKey never appears in logs, reprs, pickles or exception messages.
The underlying buffer is mutable so it can be zeroed once the signing
operation is finished.
"""


class SecretKey:
    """32-byte secp256k1 private key.

    Usage:
        with service.derive_private_key(Network.ERC20, 7) as key:
            signed = Account.from_key(key.reveal()).sign_transaction(tx)
        # key bytes are zeroed here
    """

    __slots__ = ("_buf", "_label")

    def __init__(self, raw: bytes, label: str = ""):
        if len(raw) != 32:
            raise ValueError("Private key must be 32 bytes")
        self._buf = bytearray(raw)
        self._label = label

    @property
    def label(self) -> str:
        """Non-secret description (network and derivation path)."""
        return self._label

    @property
    def is_cleared(self) -> bool:
        return not any(self._buf)

    def reveal(self) -> bytes:
        """Return the raw key bytes for a signing call.

        Raises:
            ValueError: If the key has already been cleared
        """
        if self.is_cleared:
            raise ValueError("Secret key has been cleared")
        return bytes(self._buf)

    def hex(self) -> str:
        """Return the key as 0x-prefixed hex (for eth_account)."""
        return "0x" + self.reveal().hex()

    def clear(self) -> None:
        """Overwrite the key bytes with zeros."""
        for i in range(len(self._buf)):
            self._buf[i] = 0

    def __enter__(self) -> "SecretKey":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.clear()
        return False

    def __repr__(self) -> str:
        return f"SecretKey({self._label or 'redacted'}, ***)"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("SecretKey cannot be pickled")

    def __getstate__(self):
        raise TypeError("SecretKey cannot be serialized")
