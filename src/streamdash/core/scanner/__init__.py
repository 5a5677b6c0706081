"""
Periodic commit ingestion for streamdash.
"""

from streamdash.core.scanner.scanner import CommitScanner, ScanResult

__all__ = ["CommitScanner", "ScanResult"]
