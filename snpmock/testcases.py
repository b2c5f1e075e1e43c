"""Canned report cases and a helper to build a device answering them"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .abi import SevFirmwareStatus, SevProduct, TCBVersion, new_report
from .device import Device, GetReportResponse
from .signer import AmdSigner

ZERO_REPORT_DATA = bytes(64)
AA_REPORT_DATA = b'\xaa' * 64
FW_ERR_REPORT_DATA = b'\x01' * 64


@dataclass
class ReportCase:
    """Report data the device answers, and how"""
    name: str
    report_data: bytes
    report: bytes
    es_result: int = 0
    fw_err: int = 0

    def response(self) -> GetReportResponse:
        return GetReportResponse(report=self.report, es_result=self.es_result, fw_err=self.fw_err)


def report_cases(tcb: Optional[TCBVersion] = None) -> List[ReportCase]:
    """A zero-data report, a 0xAA report and one that fails in firmware"""
    tcb = tcb or TCBVersion(bootloader=3, tee=0, snp=8, microcode=115)
    return [
        ReportCase("zeros", ZERO_REPORT_DATA, bytes(new_report(ZERO_REPORT_DATA, tcb=tcb))),
        ReportCase("aa", AA_REPORT_DATA, bytes(new_report(
            AA_REPORT_DATA, guest_svn=1, tcb=tcb,
            measurement=b'\x11' * 48, chip_id=b'\x22' * 64,
        ))),
        ReportCase("fw-error", FW_ERR_REPORT_DATA, bytes(new_report(FW_ERR_REPORT_DATA, tcb=tcb)),
                   es_result=0, fw_err=SevFirmwareStatus.INVALID_PARAM),
    ]


def tc_device(
    cases: Iterable[ReportCase],
    signer: Optional[AmdSigner] = None,
    keys: Optional[Dict[str, bytes]] = None,
    product: Optional[SevProduct] = None,
) -> Device:
    """Device answering ``cases``, signing with ``signer`` (generated if None)"""
    if signer is None:
        signer = AmdSigner.generate(product.kds_name() if product else "Milan")
    return Device(
        report_data_rsp={case.report_data.hex(): case.response() for case in cases},
        keys=dict(keys or {}),
        certs=signer.cert_table(),
        signer=signer,
        sev_product=product,
    )
