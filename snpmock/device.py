"""
Fake SEV-SNP guest device

Stands in for /dev/sev-guest. Tests program it with canned report bodies
keyed by report data, derived keys keyed by request fields, and a
certificate blob; the device signs report bodies on the fly and can inject
firmware errors that are hard to trigger on real hardware.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .abi import (
    GUEST_REQUEST_INVALID_LENGTH, REPORT_SIZE, EsResult, SevProduct,
    default_sev_product, set_signature, signed_component,
)
from .config import DEVICE_PATH
from .errors import (
    CertBufferTooSmallError, DeviceStateError, InvalidCommandError, NoKeysError,
    NoResponseError, SigningError, SimulatedIOError, UnexpectedRequestError,
    UnmappedKeyError, WrongResponseTypeError,
)
from .linuxabi import (
    COMMAND_RECORDS, IOC_SNP_GET_DERIVED_KEY, IOC_SNP_GET_EXT_REPORT,
    IOC_SNP_GET_REPORT, DerivedKeyRequest, DerivedKeyResponse,
    ExtendedReportRequest, ReportRequest, ReportResponse, UserGuestRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class GetReportResponse:
    """Canned answer to a report request"""
    report: bytes  # unsigned report body, REPORT_SIZE bytes
    es_result: int = EsResult.OK
    fw_err: int = 0


def derived_key_request_to_string(req: DerivedKeyRequest) -> str:
    """Map key for a derived key request, one fixed-width hex field per request field"""
    return (f"{req.root_key_select:08x} {req.guest_field_select:016x} {req.vmpl:08x} "
            f"{req.guest_svn:08x} {req.tcb_version:016x}")


@dataclass
class Device:
    """sev-guest driver with pre-programmed responses to commands.

    ``report_data_rsp`` maps ``report_data.hex()`` to a GetReportResponse,
    ``keys`` maps derived_key_request_to_string() output to key bytes.
    ``signer`` needs a ``sign(data) -> (r, s)`` method.
    """
    report_data_rsp: Dict[str, Any] = field(default_factory=dict)
    keys: Dict[str, bytes] = field(default_factory=dict)
    certs: bytes = b''
    signer: Any = None
    sev_product: Optional[SevProduct] = None
    _is_open: bool = field(default=False, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self, path: str = DEVICE_PATH) -> None:
        if self._is_open:
            raise DeviceStateError("device already open")
        self._is_open = True
        logger.debug("Opened fake device %s", path)

    def close(self) -> None:
        if not self._is_open:
            raise DeviceStateError("device already closed")
        self._is_open = False

    def lookup(self, report_data: bytes) -> GetReportResponse:
        """Canned response registered for ``report_data``"""
        rsp = self.report_data_rsp.get(bytes(report_data).hex())
        if rsp is None:
            raise NoResponseError(report_data)
        if not isinstance(rsp, GetReportResponse):
            raise WrongResponseTypeError(f"test error: incorrect response type {rsp!r}")
        return rsp

    def sign_report(self, report: bytes) -> bytearray:
        """Copy of ``report`` with a fresh signature embedded"""
        signed = bytearray(report[:REPORT_SIZE])
        try:
            r, s = self.signer.sign(signed_component(signed))
        except Exception as e:
            raise SigningError(f"test error: could not sign report: {e}") from e
        try:
            set_signature(r, s, signed)
        except ValueError as e:
            raise SigningError(f"test error: could not set signature: {e}") from e
        return signed

    def _get_report(self, req: ReportRequest, rsp: ReportResponse, guest: UserGuestRequest) -> int:
        mock_rsp = self.lookup(req.report_data)
        if mock_rsp.fw_err != 0:
            guest.fw_err = int(mock_rsp.fw_err)
            logger.warning("Injecting firmware error 0x%x for report data %s",
                           mock_rsp.fw_err, req.report_data.hex()[:16])
            raise SimulatedIOError(result=int(mock_rsp.es_result), fw_err=guest.fw_err)
        report = self.sign_report(mock_rsp.report)
        rsp.data[:len(report)] = report
        return int(mock_rsp.es_result)

    def _get_ext_report(self, req: ExtendedReportRequest, rsp: ReportResponse,
                        guest: UserGuestRequest) -> int:
        if req.certs_length == 0:
            guest.fw_err = int(GUEST_REQUEST_INVALID_LENGTH)
            req.certs_length = len(self.certs)
            logger.debug("Certificate size probe: %d bytes", req.certs_length)
            raise SimulatedIOError(result=0, fw_err=guest.fw_err)
        result = self._get_report(req.data, rsp, guest)
        if req.certs_length < len(self.certs):
            raise CertBufferTooSmallError(req.certs_length, len(self.certs))
        req.certs[:len(self.certs)] = self.certs
        return result

    def _get_derived_key(self, req: DerivedKeyRequest, rsp: DerivedKeyResponse,
                         guest: UserGuestRequest) -> int:
        if not self.keys:
            raise NoKeysError("test error: no keys")
        key_str = derived_key_request_to_string(req)
        key = self.keys.get(key_str)
        if key is None:
            raise UnmappedKeyError(key_str)
        n = min(len(key), len(rsp.data))
        rsp.data[:n] = key[:n]
        return 0

    def ioctl(self, command: int, request: UserGuestRequest) -> int:
        """Answer a guest request command.

        Returns the security-processor result code. Failures raise; a
        SimulatedIOError carries the result code and firmware error too.
        """
        if not self._is_open:
            raise DeviceStateError("device is not open")
        handlers = {
            IOC_SNP_GET_REPORT: self._get_report,
            IOC_SNP_GET_DERIVED_KEY: self._get_derived_key,
            IOC_SNP_GET_EXT_REPORT: self._get_ext_report,
        }
        handler = handlers.get(command)
        if handler is None:
            raise InvalidCommandError(command)
        if not isinstance(request, UserGuestRequest):
            raise UnexpectedRequestError(f"unexpected request: {request!r}")
        req_type, rsp_type = COMMAND_RECORDS[command]
        if not isinstance(request.req_data, req_type) or not isinstance(request.resp_data, rsp_type):
            raise UnexpectedRequestError(
                f"command 0x{command:x} expects {req_type.__name__}/{rsp_type.__name__}, got "
                f"{type(request.req_data).__name__}/{type(request.resp_data).__name__}"
            )
        logger.debug("Dispatching command 0x%x", command)
        return handler(request.req_data, request.resp_data, request)

    def product(self) -> SevProduct:
        """Configured product, or the default product"""
        if self.sev_product is None:
            return default_sev_product()
        return self.sev_product
