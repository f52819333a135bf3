"""Chain scanner module for detecting inbound token transfers."""

from custody.scanner.base import ChainScanner, ScanResult, TransferEvent
from custody.scanner.factory import create_scanner, create_scanners

__all__ = ["ChainScanner", "ScanResult", "TransferEvent", "create_scanner", "create_scanners"]
