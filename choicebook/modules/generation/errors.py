from __future__ import annotations

_GENERATION_RETRY_MESSAGE = "Content generator unavailable, please retry."


class ContentGeneratorError(RuntimeError):
    def __init__(self, *, code: str, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.code = str(code)
        self.message = str(message)
        self.retryable = bool(retryable)


class GenerationTimeoutError(ContentGeneratorError):
    def __init__(self, *, timeout_s: float, detail: str | None = None) -> None:
        message = f"Content generation timed out after {float(timeout_s):g}s."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(code="GENERATION_TIMEOUT", message=message, retryable=True)
        self.timeout_s = float(timeout_s)


class GenerationUnavailableError(ContentGeneratorError):
    def __init__(self, *, detail: str | None = None) -> None:
        message = _GENERATION_RETRY_MESSAGE
        if detail:
            message = f"{message} ({detail})"
        super().__init__(code="GENERATION_UNAVAILABLE", message=message, retryable=True)


class GeneratedContentInvalidError(ContentGeneratorError):
    def __init__(self, *, detail: str | None = None) -> None:
        message = "Generated content was invalid. Please retry."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(code="GENERATION_INVALID_OUTPUT", message=message, retryable=True)
