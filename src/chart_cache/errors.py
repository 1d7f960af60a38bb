"""Error taxonomy shared by every chart cache component.

Each error carries the taxonomy ``code`` reported to callers (batch outcomes,
JSON error bodies) and the HTTP status the web layer answers with.
"""


class ChartCacheError(Exception):
    code = "ChartCacheError"
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class InvalidSymbolFormat(ChartCacheError):
    code = "InvalidSymbolFormat"
    status_code = 400


class NotFound(ChartCacheError):
    code = "NotFound"
    status_code = 404


class UpstreamTimeout(ChartCacheError):
    code = "UpstreamTimeout"
    status_code = 504


class UpstreamUnavailable(ChartCacheError):
    code = "UpstreamUnavailable"
    status_code = 502


class UpstreamBadResponse(ChartCacheError):
    code = "UpstreamBadResponse"
    status_code = 502


class ValidationFailure(ChartCacheError):
    code = "ValidationFailure"
    status_code = 400


class BackendUnavailable(ChartCacheError):
    code = "BackendUnavailable"
    status_code = 503


class StorageIOFailure(ChartCacheError):
    code = "StorageIOFailure"
    status_code = 500


UPSTREAM_ERRORS = (UpstreamTimeout, UpstreamUnavailable, UpstreamBadResponse)
