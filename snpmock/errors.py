"""Errors raised by the fake SEV-SNP guest device, quote provider and getter"""

import errno
import os
from typing import Optional


class SnpMockError(Exception):
    """Base class for all snpmock failures"""


class DeviceStateError(SnpMockError):
    """Device opened twice, closed twice, or used while closed"""


class NoResponseError(SnpMockError, LookupError):
    """No canned response registered for the requested report data"""

    def __init__(self, report_data: bytes):
        self.report_data = bytes(report_data)
        super().__init__(f"test error: no response for {self.report_data.hex()}")


class WrongResponseTypeError(SnpMockError, TypeError):
    """A registered response is not a GetReportResponse"""


class UnexpectedRequestError(SnpMockError, TypeError):
    """The request records do not match the command being dispatched"""


class InvalidCommandError(SnpMockError):
    """Command number is not one of the three guest request commands"""

    def __init__(self, command: int):
        self.command = command
        super().__init__(f"invalid command 0x{command:x}")


class SimulatedIOError(SnpMockError, OSError):
    """Simulated EIO from the guest driver.

    ``result`` is the security-processor result code the ioctl would have
    returned alongside the failure, ``fw_err`` the firmware status.
    """

    def __init__(self, result: int = 0, fw_err: Optional[int] = None):
        super().__init__(errno.EIO, os.strerror(errno.EIO))
        self.result = result
        self.fw_err = fw_err


class CertBufferTooSmallError(SnpMockError):
    """Caller's certificate buffer is smaller than the certificate blob"""

    def __init__(self, given: int, needed: int):
        self.given = given
        self.needed = needed
        super().__init__(f"test failure: cert buffer too small: {given} < {needed}")


class NoKeysError(SnpMockError, LookupError):
    """Derived key requested but the device has no keys configured"""


class UnmappedKeyError(SnpMockError, LookupError):
    """Derived key request has no mapped key"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"test error: unmapped key request {key!r}")


class ProductRequiredError(SnpMockError):
    """Quote requested from a device without product metadata"""


class SigningError(SnpMockError):
    """Signer failed or the signature could not be embedded"""


class NotFoundError(SnpMockError, LookupError):
    """No prepared response left for a URL"""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"404: {url}")
