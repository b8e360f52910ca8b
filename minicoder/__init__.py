from .session import Result, Session

__all__ = ["Result", "Session"]
