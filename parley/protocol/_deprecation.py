"""Single import point for the `deprecated` decorator used on legacy engine entry points."""
try:
    from warnings import deprecated  # Python 3.13+
except ImportError:
    from typing_extensions import deprecated  # Python <= 3.12

DESTROY_DEPRECATION = "ProtocolEngine.destroy() is deprecated; use ProtocolEngine.shutdown()."

__all__ = ["deprecated", "DESTROY_DEPRECATION"]
