from __future__ import annotations


class UpstreamError(Exception):
    """Non-2xx upstream outcome that the pipeline could not recover from."""

    def __init__(
        self,
        provider: str,
        status: int,
        body: str,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(f"{provider} upstream error ({status})")
        self.provider = provider
        self.status = status
        self.body = body
        self.retry_after = retry_after

    def to_payload(self) -> dict[str, object]:
        return {
            "type": "error",
            "error": {
                "type": "upstream_error",
                "message": self.body,
                "provider": self.provider,
            },
        }


class AuthError(Exception):
    pass


class ValidationError(ValueError):
    pass


class RoutingError(Exception):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status
