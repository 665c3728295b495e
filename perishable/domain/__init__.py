from perishable.domain.errors import (
    AlreadyTerminal,
    EngineError,
    InsufficientStock,
    NotFound,
    ProviderError,
    ValidityInsufficient,
)

__all__ = [
    "AlreadyTerminal",
    "EngineError",
    "InsufficientStock",
    "NotFound",
    "ProviderError",
    "ValidityInsufficient",
]
