"""Exceptions raised by the IOA map tools."""


class IOAMapError(Exception):
    """Base class for tool errors"""


class TargetMapError(IOAMapError):
    """Target map missing, unreadable, unwritable or without valid entries"""

    def __init__(self, path, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{reason}: {self.path}")
