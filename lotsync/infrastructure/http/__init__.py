"""HTTP adapters for lotsync.

This package provides the client for the upstream vehicle auction API.
"""

from .client import AuctionApiClient, UpstreamPage, error_for_status, parse_page

__all__ = [
    "AuctionApiClient",
    "UpstreamPage",
    "error_for_status",
    "parse_page",
]
