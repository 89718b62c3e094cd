from __future__ import annotations


class PairTraderError(Exception):
    """Base class for errors raised by the trading engine."""


class TransientError(PairTraderError):
    """Network failure, rate limit or timeout. Safe to retry."""


class TerminalError(PairTraderError):
    """Retrying the same request cannot succeed."""


class OrderRejectedError(TerminalError):
    """The venue refused the order for this client order id."""


class UnsupportedInstrumentError(TerminalError):
    """The venue does not know the pair or currency (configuration bug)."""


class ConfigError(TerminalError, ValueError):
    """Invalid configuration; fatal at startup."""


class DecisionServiceError(TransientError):
    """The LLM decision service failed or timed out."""


class MarketDataError(PairTraderError):
    """Price or candle data could not be obtained or is unusable."""


class OrderNotFilledError(PairTraderError):
    """A submitted order did not report a fill within the polling budget."""

    def __init__(self, client_order_id: str, attempts: int):
        super().__init__(f"Order {client_order_id} not filled after {attempts} checks")
        self.client_order_id = client_order_id
        self.attempts = attempts
