from typing import Optional


class SiteMapError(Exception):
    """Base class for failures raised while building a site map."""

    def __init__(self, message: str, *, layer: Optional[str] = None, url: Optional[str] = None):
        super().__init__(message)
        self.layer = layer
        self.url = url

    def log_extra(self) -> dict:
        return {
            'error_type': type(self).__name__,
            'layer': self.layer,
            'url': self.url,
        }


class LayerFetchError(SiteMapError):
    """A remote layer could not be fetched or decoded."""


class ArcGISError(LayerFetchError):
    """Raised when ArcGIS returns an application level error response."""

    def __init__(self, message: str, code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.code = code


class GeometryError(SiteMapError):
    """Input geometry is missing or unusable."""


class AuthError(SiteMapError):
    """No usable token could be obtained for a service."""
