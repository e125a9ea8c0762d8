"""Exception types shared across the review desk."""


class AdReviewError(Exception):
    """Base exception for all application errors."""


class ConfigurationError(AdReviewError):
    """Raised when required configuration is missing or invalid."""


class AnalysisProviderError(AdReviewError):
    """Raised when the external analysis backend fails."""


class AnalysisTimeoutError(AnalysisProviderError):
    """Raised when the analysis backend does not answer in time."""


class HistoryStoreError(AdReviewError):
    """Raised when a history record cannot be read or written."""


class RecordNotFoundError(HistoryStoreError):
    """Raised when a history record id does not exist."""


class ChecklistStateError(AdReviewError):
    """Raised when a checklist action is not allowed in the current state."""
