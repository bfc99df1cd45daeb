"""
Error taxonomy for the gateway.

- AuthFailure: bad or missing signature / challenge parameters (terminal)
- DecodeFailure: malformed inbound payload (terminal, HTTP 500)
- UpstreamFailure: model backend unreachable, non-2xx or malformed reply
- CacheFailure: context store unavailable (proceed with empty context)
- ArchiveFailure: chat record could not be stored (logged, swallowed)
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AuthFailure(GatewayError):
    pass


class DecodeFailure(GatewayError):
    pass


class UpstreamFailure(GatewayError):
    pass


class CacheFailure(GatewayError):
    pass


class ArchiveFailure(GatewayError):
    pass
