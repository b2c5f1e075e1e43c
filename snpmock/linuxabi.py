"""Guest request commands and their request/response records.

Each ioctl command is paired with exactly one request record and one
response record. ``UserGuestRequest`` carries the pair plus the firmware
error slot the driver writes back (exitinfo2).
"""

from dataclasses import dataclass, field
from typing import Union

from .abi import REPORT_DATA_SIZE

REPORT_RESPONSE_SIZE = 4000
DERIVED_KEY_SIZE = 32

_IOC_WRITE = 1
_IOC_READ = 2
_SNP_GUEST_REQ_IOC_TYPE = ord('S')
_SNP_GUEST_REQUEST_IOCTL_SIZE = 32  # msg_version, req_data, resp_data, exitinfo2


def _iowr(ioc_type: int, nr: int, size: int) -> int:
    return ((_IOC_READ | _IOC_WRITE) << 30) | (size << 16) | (ioc_type << 8) | nr


IOC_SNP_GET_REPORT = _iowr(_SNP_GUEST_REQ_IOC_TYPE, 0x0, _SNP_GUEST_REQUEST_IOCTL_SIZE)
IOC_SNP_GET_DERIVED_KEY = _iowr(_SNP_GUEST_REQ_IOC_TYPE, 0x1, _SNP_GUEST_REQUEST_IOCTL_SIZE)
IOC_SNP_GET_EXT_REPORT = _iowr(_SNP_GUEST_REQ_IOC_TYPE, 0x2, _SNP_GUEST_REQUEST_IOCTL_SIZE)


@dataclass
class ReportRequest:
    report_data: bytes
    vmpl: int = 0

    def __post_init__(self):
        if len(self.report_data) != REPORT_DATA_SIZE:
            raise ValueError(
                f"report data must be {REPORT_DATA_SIZE} bytes, got {len(self.report_data)}"
            )


@dataclass
class ReportResponse:
    data: bytearray = field(default_factory=lambda: bytearray(REPORT_RESPONSE_SIZE))


@dataclass
class ExtendedReportRequest:
    """Report request plus a caller-owned certificate buffer.

    ``certs_length`` is in/out: the buffer size on the way in, the needed
    size after a size probe.
    """
    data: ReportRequest
    certs: bytearray = field(default_factory=bytearray)
    certs_length: int = 0


@dataclass
class DerivedKeyRequest:
    root_key_select: int = 0
    guest_field_select: int = 0
    vmpl: int = 0
    guest_svn: int = 0
    tcb_version: int = 0


@dataclass
class DerivedKeyResponse:
    data: bytearray = field(default_factory=lambda: bytearray(DERIVED_KEY_SIZE))


GuestRequestData = Union[ReportRequest, ExtendedReportRequest, DerivedKeyRequest]
GuestResponseData = Union[ReportResponse, DerivedKeyResponse]


@dataclass
class UserGuestRequest:
    req_data: GuestRequestData
    resp_data: GuestResponseData
    fw_err: int = 0


# command -> (request type, response type)
COMMAND_RECORDS = {
    IOC_SNP_GET_REPORT: (ReportRequest, ReportResponse),
    IOC_SNP_GET_DERIVED_KEY: (DerivedKeyRequest, DerivedKeyResponse),
    IOC_SNP_GET_EXT_REPORT: (ExtendedReportRequest, ReportResponse),
}


def report_request(report_data: bytes, vmpl: int = 0) -> UserGuestRequest:
    """Wrap a get-report request for ``ioctl``"""
    return UserGuestRequest(ReportRequest(report_data, vmpl), ReportResponse())


def extended_report_request(report_data: bytes, certs_length: int = 0, vmpl: int = 0) -> UserGuestRequest:
    """Wrap a get-extended-report request with a zeroed cert buffer"""
    req = ExtendedReportRequest(
        data=ReportRequest(report_data, vmpl),
        certs=bytearray(certs_length),
        certs_length=certs_length,
    )
    return UserGuestRequest(req, ReportResponse())


def derived_key_request(**fields) -> UserGuestRequest:
    """Wrap a get-derived-key request for ``ioctl``"""
    return UserGuestRequest(DerivedKeyRequest(**fields), DerivedKeyResponse())
