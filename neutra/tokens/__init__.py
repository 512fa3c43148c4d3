from .token import BatchToken, InsufficientBalanceError, TokenError, TokenSink, TransferEvent

__all__ = [
    "BatchToken",
    "InsufficientBalanceError",
    "TokenError",
    "TokenSink",
    "TransferEvent",
]
