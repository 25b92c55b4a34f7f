class NotFoundError(LookupError):
    """A referenced notification type, queued message or device does not exist."""

    def __init__(self, resource: str, identifier=None):
        self.resource = resource
        self.identifier = identifier
        detail = f"{resource} not found" if identifier is None else f"{resource} '{identifier}' not found"
        super().__init__(detail)


class ConfigurationError(Exception):
    """A delivery channel is missing settings it needs."""


class SmsDeliveryError(Exception):
    """The SMS gateway refused the message or could not be reached."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)
