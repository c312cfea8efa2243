"""
Custom exception hierarchy for the video gallery watcher.

Per-entry errors (probe, thumbnail, path resolution) are caught and recorded
by the enricher and the reconciliation engine. Structural errors (catalog,
watch installation) abort only the operation that raised them.
"""


class VideoGalleryError(Exception):
    """Base exception for all video gallery errors."""
    pass


class ConfigError(VideoGalleryError):
    """Raised for unknown or out-of-range configuration values."""
    pass


class PathResolutionError(VideoGalleryError):
    """Raised when a path cannot be resolved (it does not currently exist)."""
    pass


class ProbeError(VideoGalleryError):
    """Raised when media probing fails or times out."""
    pass


class ThumbnailError(VideoGalleryError):
    """Raised when thumbnail generation fails."""
    pass


class CatalogError(VideoGalleryError):
    """Raised when catalog storage operations fail."""
    pass


class WatchError(VideoGalleryError):
    """Raised when a filesystem watch cannot be installed."""
    pass
