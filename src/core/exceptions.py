class BattleDaemonError(Exception):
    pass


class ConfigurationError(BattleDaemonError):
    """Missing or invalid settings detected while wiring services. Fatal."""


class RpcError(BattleDaemonError):
    def __init__(
        self, message: str, code: int | None = None, data: dict | None = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.data = data or {}

    @property
    def logs(self) -> list[str]:
        """Program logs attached to a failed preflight simulation, if any."""
        logs = self.data.get("logs")
        return list(logs) if isinstance(logs, list) else []


class ResolutionError(BattleDaemonError):
    """Live pool state for a token could not be resolved this pass."""


class PoolNotFoundError(ResolutionError):
    pass


class PriceComputationError(ResolutionError):
    pass


class TransactionError(BattleDaemonError):
    """A settlement transaction failed on submission or confirmation."""

    def __init__(
        self,
        message: str,
        *,
        signature: str | None = None,
        logs: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.signature = signature
        self.logs = logs or []

    def describe(self) -> str:
        parts = [str(self)]
        if self.signature:
            parts.append(f"signature={self.signature}")
        if self.logs:
            parts.append("logs=" + " | ".join(self.logs[-12:]))
        return " ".join(parts)


class SettlementError(BattleDaemonError):
    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
