class GatewayError(Exception):
    """Base error; ``status_code`` is the HTTP status it renders as."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientInputError(GatewayError):
    status_code = 400


class AuthenticationError(GatewayError):
    status_code = 401


class UpstreamError(GatewayError):
    status_code = 500

    def __init__(self, message: str, errcode: int = 0):
        super().__init__(message)
        self.errcode = errcode


class ConfigError(GatewayError):
    """Invalid configuration; raised at startup only."""
