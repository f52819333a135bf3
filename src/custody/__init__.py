"""Custodial deposit pipeline: HD addresses, chain scanning, crediting and sweeping."""

__version__ = "0.1.0"
