"""
Neutra Batch Settlement Package

Core imports are lazily loaded so that the engine can be used without the
persistence or CLI dependencies being importable.
For direct module access, import from submodules:

    from neutra.batch import BatchCoordinator, RoundLedger, ClaimResolver
    from neutra.database_sqlite import BatchDatabase
    from neutra.exceptions import RoundLockedError
"""

__version__ = "1.0.0"


# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading to prevent dependency conflicts."""
    if name == 'BatchDatabase':
        from .database_sqlite import BatchDatabase
        return BatchDatabase
    elif name == 'BatchCoordinator':
        from .batch import BatchCoordinator
        return BatchCoordinator
    elif name == 'NeutraException':
        from .exceptions import NeutraException
        return NeutraException
    raise AttributeError(f"module 'neutra' has no attribute {name!r}")

__all__ = ['BatchDatabase', 'BatchCoordinator', 'NeutraException']
