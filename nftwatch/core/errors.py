"""Exception hierarchy shared by the crawler and notification workers."""

from __future__ import annotations


class NftWatchError(Exception):
    """Base error for nftwatch."""
