class ThiranError(Exception):
    pass


class ProviderError(ThiranError):
    """Transport, auth or protocol failure reported by a provider adapter."""

    def __init__(self, message: str, provider: str = "", status_code: int = 0) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ToolArgumentsError(ProviderError):
    """A structured tool call whose argument payload is not a JSON object."""

    def __init__(self, raw: str, provider: str = "") -> None:
        super().__init__(f"Failed to parse tool arguments: {raw}", provider=provider)
        self.raw = raw


class IterationLimitExceeded(ThiranError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Max iterations reached ({limit})")
        self.limit = limit


class ProviderNotFoundError(KeyError):
    pass
