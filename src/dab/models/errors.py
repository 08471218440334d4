"""Error taxonomy for DAB."""


class DABError(Exception):
    """Base class for DAB errors."""
    pass


class NotInitialized(DABError):
    """An operation was attempted on a provider handle before it connected."""

    def __init__(self, provider_id: str):
        super().__init__(f"Server {provider_id} not initialized")
        self.provider_id = provider_id


class NoCredentialsConfigured(DABError):
    """The credential pool for a provider is empty."""

    def __init__(self, provider: str):
        super().__init__(f"No credentials configured for provider '{provider}'")
        self.provider = provider


class ApprovalTransportError(DABError):
    """The approval decision could not be obtained. Callers fail closed."""
    pass


class ExecutionError(DABError):
    """A remote command or its transport failed."""
    pass


class ProviderInitializationError(DABError):
    """A tool provider could not be started; fatal to the session."""

    def __init__(self, provider_id: str, cause: BaseException):
        super().__init__(f"Failed to initialize provider '{provider_id}': {cause}")
        self.provider_id = provider_id
        self.cause = cause
