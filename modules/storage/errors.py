"""Error types raised by the asset store."""

from __future__ import annotations

from typing import Optional


class AssetStoreError(Exception):
    """Base class for storage and cache failures."""


class IngestionError(AssetStoreError):
    """A source URI could not be turned into a local file."""

    def __init__(self, message: str, source_uri: Optional[str] = None) -> None:
        super().__init__(message)
        self.source_uri = source_uri


class CorruptedEntryError(AssetStoreError, ValueError):
    """A ledger value does not decode into the expected record."""


class TrainingSetLimitError(AssetStoreError, ValueError):
    """Too many images were passed for the training set."""


class StatusTransitionError(AssetStoreError, ValueError):
    """A generated photo update would leave a terminal status."""
