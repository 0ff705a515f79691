"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""Exceptions raised by the import pipeline."""


class TmtpError(Exception):
    """Base class for all TMTP errors."""


class ConfigurationError(TmtpError):
    """
    An operator mapping decision is invalid.

    Raised while resolving reference entities; the job fails as a whole.
    """

    def __init__(self, message: str, entity: str | None = None, source_id: int | None = None):
        self.entity = entity
        self.source_id = source_id
        if entity is not None and source_id is not None:
            message = f"{entity} {source_id}: {message}"
        super().__init__(message)


class ImportCanceled(TmtpError):
    """Cancellation was requested while an import was running."""


class AnalysisAborted(TmtpError):
    """Cancellation was requested while a bundle was being analyzed."""


class JobNotFoundError(TmtpError):
    """No import job exists with the given id."""


class BundleSourceError(TmtpError):
    """The export bundle could not be located or downloaded."""
