"""Fake configfs-tsm quote provider backed by the fake guest device"""

import logging
from dataclasses import dataclass

from .abi import (
    EXTRA_PLATFORM_INFO_V0_SIZE, ExtraPlatformInfo, SevProduct,
    extend_platform_cert_table, masked_cpuid1_eax_from_product,
)
from .device import Device
from .errors import ProductRequiredError, SimulatedIOError

logger = logging.getLogger(__name__)


@dataclass
class QuoteProvider:
    """SEV-SNP quote provider with the device's pre-programmed responses"""
    device: Device

    def is_supported(self) -> bool:
        return True

    def product(self) -> SevProduct:
        return self.device.product()

    def get_raw_quote(self, report_data: bytes) -> bytes:
        """Signed report for ``report_data`` followed by the extended cert table.

        Unlike Device.product(), a missing product is an error here since the
        platform info record needs the real CPUID.
        """
        mock_rsp = self.device.lookup(report_data)
        if mock_rsp.fw_err != 0:
            raise SimulatedIOError(result=int(mock_rsp.es_result), fw_err=int(mock_rsp.fw_err))
        report = self.device.sign_report(mock_rsp.report)
        product = self.device.sev_product
        if product is None:
            raise ProductRequiredError("mock SevProduct must not be None")
        extended = extend_platform_cert_table(self.device.certs, ExtraPlatformInfo(
            size=EXTRA_PLATFORM_INFO_V0_SIZE,
            cpuid1_eax=masked_cpuid1_eax_from_product(product),
        ))
        logger.debug("Built quote: %d byte report, %d byte cert table", len(report), len(extended))
        return bytes(report) + extended
