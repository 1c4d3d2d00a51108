from .resolver import AddressResolver
from .coordinator import BackfillCoordinator, ALL_PHASES

__all__ = [
    "AddressResolver",
    "BackfillCoordinator",
    "ALL_PHASES",
]
