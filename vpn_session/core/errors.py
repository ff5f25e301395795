"""
Exceptions raised by the VPN session core.
"""


class VPNSessionError(Exception):
    """Base class for VPN session specific exceptions"""
    def __init__(self, message, additional_context=None):
        self.message = message
        self.additional_context = additional_context
        super().__init__(self.message)


class ProbeFailure(VPNSessionError):
    """A single availability probe errored. Absorbed as "unavailable"."""


class NegotiationExhausted(VPNSessionError):
    """No protocol answered. Resolved by the fallback protocol, never raised to callers."""


class CredentialsMissingError(VPNSessionError):
    """No stored credentials. The user has to authenticate again."""


class CredentialStoreError(VPNSessionError):
    """The credential store could not be read or written (transient)."""


class CertificateIssuanceFailedError(VPNSessionError):
    """The certificate issuer kept failing for a whole refresh cycle."""


class TunnelAgentError(VPNSessionError):
    """Error code reported by the tunnel agent."""
    def __init__(self, code: int, message=None):
        self.code = code
        super().__init__(message or f"Tunnel agent error {code}", {'code': code})


class RemoteUnavailableError(VPNSessionError):
    """The remote API could not be reached. Skip this cycle and retry later."""


class ApiError(VPNSessionError):
    """The remote API answered with an application level error."""
    def __init__(self, message, http_status: int = 0, code: int = 0):
        self.http_status = http_status
        self.code = code
        super().__init__(message, {'http_status': http_status, 'code': code})


class TelemetryDeliveryFailed(VPNSessionError):
    """A telemetry event could not be delivered. Always recoverable."""


class VPNConnectionError(VPNSessionError):
    """A connect request failed before the tunnel agent was started."""


class ServerUnavailableError(VPNConnectionError):
    """No server matches the request, or the requested one is in maintenance."""


class ServerTierError(VPNConnectionError):
    """The requested server needs a higher plan than the user has."""


class ConnectionCancelledError(VPNConnectionError):
    """The attempt was superseded by a newer connect or by a disconnect."""
