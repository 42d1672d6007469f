from .session import MonitorSession

__all__ = ["MonitorSession"]
