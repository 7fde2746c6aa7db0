#!/usr/bin/env python3
"""
Exceptions raised by the dsPIC33F serial bootloader host
"""

from typing import Optional


class LoaderError(Exception):
    """Base class for every failure that aborts a download"""


class UsageError(LoaderError):
    """Invalid command line"""


class HexFormatError(LoaderError, ValueError):
    """Malformed or unsupported Intel HEX input"""

    def __init__(self, message: str, record: Optional[int] = None):
        if record is not None:
            message = f"record {record}: {message}"
        super().__init__(message)
        self.record = record


class ImageValidationError(LoaderError, ValueError):
    """Firmware image cannot coexist with the resident bootloader"""

    def __init__(self, message: str, address: Optional[int] = None, value: Optional[int] = None):
        super().__init__(message)
        self.address = address
        self.value = value


class TransportError(LoaderError, IOError):
    """Serial port could not be opened or configured"""


class DeviceNotFoundError(LoaderError, IOError):
    """Bootloader did not acknowledge the keyphrase"""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class ProtocolError(LoaderError, IOError):
    """Checksum echo or write-done flag mismatch during the download"""

    def __init__(
        self,
        message: str,
        word_address: Optional[int] = None,
        sent: Optional[int] = None,
        received: Optional[int] = None,
    ):
        super().__init__(message)
        self.word_address = word_address
        self.sent = sent
        self.received = received
