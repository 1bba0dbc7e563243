"""
speednet Errors

Every failure raised by the control protocol, the transports and the
packet generator derives from SpeednetError.
"""

from typing import Optional


class SpeednetError(Exception):
    """Base class for speednet errors"""
    pass


class TransportConnectError(SpeednetError, ConnectionError):
    """Raised when a connect, bind or accept fails"""
    pass


class FramingError(SpeednetError):
    """Raised when a message frame cannot be delimited"""
    pass


class DecodeError(SpeednetError):
    """Raised when a delimited frame does not hold a valid message"""
    pass


class ConnectionClosed(SpeednetError):
    """Raised when the peer closed the channel before a frame started"""
    pass


class ProtocolViolation(SpeednetError):
    """Raised when a message is not valid for the current state"""
    pass


class UnknownTest(SpeednetError):
    """Raised when a stream announces a test id the server never allocated"""

    def __init__(self, test_id: int):
        super().__init__(f"Unknown test id {test_id}")
        self.test_id = test_id


class StreamIOError(SpeednetError):
    """Raised when a read or write fails in the middle of a data stream"""

    def __init__(self, message: str, cause: Optional[OSError] = None):
        super().__init__(message)
        self.cause = cause


class RegistryFull(SpeednetError):
    """Raised when the 32-bit test id space is exhausted"""
    pass
