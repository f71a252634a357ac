"""helpcenter-kb: local semantic index of hosted help-center article collections."""

__version__ = "0.3.0"

__all__ = ["__version__"]
