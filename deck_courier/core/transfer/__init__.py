from .engine import TransferEngine

__all__ = ["TransferEngine"]
