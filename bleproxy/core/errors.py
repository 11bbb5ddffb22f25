"""Domain-specific errors for bleproxy."""


class BleProxyError(Exception):
    """Base error for bleproxy."""


class ConfigValidationError(BleProxyError):
    """Raised when a proxy configuration does not conform to schema or semantics."""


class ConfigLoadError(BleProxyError):
    """Raised when reading the proxy configuration fails."""


class NotConnectedError(BleProxyError):
    """Raised when a remote operation is requested before the link is ready."""


class UnknownIdentifierError(BleProxyError):
    """Raised when a service or characteristic id is not part of the configured topology."""


class UnknownCharacteristicError(UnknownIdentifierError):
    """Raised when a characteristic has no bound remote handle."""


class CapabilityUnsupportedError(BleProxyError):
    """Raised when a characteristic lacks the property an operation needs."""


class ServerStateError(BleProxyError):
    """Raised when the local server is asked to advertise from a busy state."""


class DiscoveryFailedError(BleProxyError):
    """Raised when service or characteristic discovery fails."""


class AdapterError(BleProxyError):
    """Base error for failures reported by a radio adapter."""


class ProxyTimeoutError(AdapterError):
    """Raised when an adapter operation times out."""
