from .factory import get_adapter, process

__all__ = ["get_adapter", "process"]
