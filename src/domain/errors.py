class TranscriptionError(Exception):
    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {super().__str__()}"
        return super().__str__()


class MissingConfigurationError(TranscriptionError):
    def __init__(self, setting: str, provider: str | None = None) -> None:
        self.setting = setting
        super().__init__(f"Missing {setting}.", provider)


class UnknownProviderError(TranscriptionError):
    pass


class ProviderConnectionError(TranscriptionError):
    pass


class SideChannelError(TranscriptionError):
    pass


class InvalidTransitionError(TranscriptionError):
    pass


def normalize_error(value: object, fallback: str = "Unknown error") -> Exception:
    if isinstance(value, Exception):
        return value
    if value is None:
        return ProviderConnectionError(fallback)
    return ProviderConnectionError(str(value))
