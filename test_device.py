#!/usr/bin/env python3
"""Unit tests for the fake SEV-SNP guest device"""

import errno

import pytest

from snpmock.abi import (
    GUEST_REQUEST_INVALID_LENGTH, REPORT_SIZE, SNPAttestationReport,
    SevFirmwareStatus, SevProduct, SevProductName, default_sev_product, new_report,
)
from snpmock.device import Device, GetReportResponse, derived_key_request_to_string
from snpmock.errors import (
    CertBufferTooSmallError, DeviceStateError, InvalidCommandError, NoKeysError,
    NoResponseError, SigningError, SimulatedIOError, UnexpectedRequestError, UnmappedKeyError,
    WrongResponseTypeError,
)
from snpmock.linuxabi import (
    IOC_SNP_GET_DERIVED_KEY, IOC_SNP_GET_EXT_REPORT, IOC_SNP_GET_REPORT,
    DerivedKeyRequest, derived_key_request, extended_report_request, report_request,
)
from snpmock.signer import AmdSigner
from snpmock.testcases import AA_REPORT_DATA, FW_ERR_REPORT_DATA, ZERO_REPORT_DATA, report_cases, tc_device
from snpmock.verify import verify_report_bytes

SIGNER = AmdSigner.generate()
KEY_REQ = dict(root_key_select=1, guest_field_select=0x3F, vmpl=1, guest_svn=2, tcb_version=0x7300000000000803)
DERIVED_KEY = bytes(range(32))


def make_device(**kwargs) -> Device:
    keys = {derived_key_request_to_string(DerivedKeyRequest(**KEY_REQ)): DERIVED_KEY}
    device = tc_device(report_cases(), signer=SIGNER, keys=keys, **kwargs)
    device.open()
    return device


def test_open_close():
    """Test that open and close toggle state and reject repeats"""
    print("\n=== Test: Open/Close ===")
    device = Device()
    device.open()
    assert device.is_open
    with pytest.raises(DeviceStateError):
        device.open()
    device.close()
    assert not device.is_open
    with pytest.raises(DeviceStateError):
        device.close()
    print("✓ Double open and double close rejected")


def test_ioctl_requires_open_device():
    device = make_device()
    device.close()
    with pytest.raises(DeviceStateError):
        device.ioctl(IOC_SNP_GET_REPORT, report_request(AA_REPORT_DATA))


def test_get_report_signs_canned_body():
    """Test that a registered report comes back signed by the VCEK"""
    print("\n=== Test: Get Report ===")
    device = make_device()
    for case in report_cases():
        if case.fw_err:
            continue
        req = report_request(case.report_data)
        result = device.ioctl(IOC_SNP_GET_REPORT, req)
        assert result == case.es_result, "Result code mismatch"
        assert req.fw_err == 0
        report = bytes(req.resp_data.data[:REPORT_SIZE])
        ok, msg = verify_report_bytes(report, device.certs)
        assert ok, msg
        parsed = SNPAttestationReport.from_bytes(report)
        assert parsed.report_data == case.report_data
        print(f"✓ {case.name}: {msg}")


def test_get_report_does_not_mutate_template():
    device = make_device()
    template = device.report_data_rsp[AA_REPORT_DATA.hex()].report
    before = bytes(template)
    device.ioctl(IOC_SNP_GET_REPORT, report_request(AA_REPORT_DATA))
    assert device.report_data_rsp[AA_REPORT_DATA.hex()].report == before


def test_get_report_es_result_is_returned():
    device = make_device()
    data = b'\x05' * 64
    device.report_data_rsp[data.hex()] = GetReportResponse(report=bytes(new_report(data)), es_result=3)
    assert device.ioctl(IOC_SNP_GET_REPORT, report_request(data)) == 3


def test_get_report_unregistered():
    """Test the end-to-end scenario: 0xAA works, 0xBB has no response"""
    print("\n=== Test: Unregistered Report Data ===")
    device = make_device()
    device.ioctl(IOC_SNP_GET_REPORT, report_request(AA_REPORT_DATA))
    with pytest.raises(NoResponseError) as exc_info:
        device.ioctl(IOC_SNP_GET_REPORT, report_request(b'\xbb' * 64))
    assert exc_info.value.report_data == b'\xbb' * 64
    print("✓ 0xBB... has no response")


def test_get_report_wrong_response_type():
    device = make_device()
    device.report_data_rsp[ZERO_REPORT_DATA.hex()] = "not a response"
    with pytest.raises(WrongResponseTypeError):
        device.ioctl(IOC_SNP_GET_REPORT, report_request(ZERO_REPORT_DATA))


def test_get_report_firmware_error():
    """Test that a firmware error surfaces as EIO and leaves the buffer untouched"""
    print("\n=== Test: Firmware Error ===")
    device = make_device()
    data = b'\x02' * 64
    device.report_data_rsp[data.hex()] = GetReportResponse(
        report=bytes(new_report(data)), es_result=2, fw_err=SevFirmwareStatus.POLICY_FAILURE)
    req = report_request(data)
    with pytest.raises(SimulatedIOError) as exc_info:
        device.ioctl(IOC_SNP_GET_REPORT, req)
    assert exc_info.value.errno == errno.EIO
    assert exc_info.value.result == 2
    assert req.fw_err == SevFirmwareStatus.POLICY_FAILURE
    assert req.resp_data.data == bytearray(len(req.resp_data.data)), "Buffer should be untouched"
    print("✓ EIO with result code and firmware status")

    req = report_request(FW_ERR_REPORT_DATA)
    with pytest.raises(SimulatedIOError):
        device.ioctl(IOC_SNP_GET_REPORT, req)
    assert req.fw_err == SevFirmwareStatus.INVALID_PARAM


def test_extended_report_size_probe():
    """Test that a zero cert length reports the real length without signing"""
    print("\n=== Test: Extended Report Size Probe ===")
    device = make_device()

    class NoSign:
        def sign(self, data):
            raise AssertionError("size probe must not sign")

    device.signer = NoSign()
    req = extended_report_request(AA_REPORT_DATA, certs_length=0)
    with pytest.raises(SimulatedIOError) as exc_info:
        device.ioctl(IOC_SNP_GET_EXT_REPORT, req)
    assert exc_info.value.result == 0
    assert req.fw_err == GUEST_REQUEST_INVALID_LENGTH
    assert req.req_data.certs_length == len(device.certs)
    assert req.resp_data.data == bytearray(len(req.resp_data.data))
    print(f"✓ Probe reported {req.req_data.certs_length} bytes of certificates")


def test_extended_report_copies_certs():
    device = make_device()
    req = extended_report_request(AA_REPORT_DATA, certs_length=len(device.certs) + 100)
    assert device.ioctl(IOC_SNP_GET_EXT_REPORT, req) == 0
    assert bytes(req.req_data.certs[:len(device.certs)]) == device.certs
    ok, msg = verify_report_bytes(bytes(req.resp_data.data[:REPORT_SIZE]), bytes(req.req_data.certs))
    assert ok, msg


def test_extended_report_buffer_too_small():
    """Test that a short cert buffer fails without copying"""
    device = make_device()
    req = extended_report_request(AA_REPORT_DATA, certs_length=len(device.certs) - 1)
    with pytest.raises(CertBufferTooSmallError):
        device.ioctl(IOC_SNP_GET_EXT_REPORT, req)
    assert req.req_data.certs == bytearray(len(device.certs) - 1)


def test_extended_report_firmware_error():
    device = make_device()
    req = extended_report_request(FW_ERR_REPORT_DATA, certs_length=len(device.certs))
    with pytest.raises(SimulatedIOError):
        device.ioctl(IOC_SNP_GET_EXT_REPORT, req)
    assert req.fw_err == SevFirmwareStatus.INVALID_PARAM
    assert req.req_data.certs == bytearray(len(device.certs))


def test_derived_key():
    """Test that derived keys are looked up by every request field"""
    print("\n=== Test: Derived Key ===")
    device = make_device()
    req = derived_key_request(**KEY_REQ)
    assert device.ioctl(IOC_SNP_GET_DERIVED_KEY, req) == 0
    assert bytes(req.resp_data.data) == DERIVED_KEY
    print("✓ Mapped key returned")

    for name in KEY_REQ:
        fields = dict(KEY_REQ)
        fields[name] += 1
        with pytest.raises(UnmappedKeyError):
            device.ioctl(IOC_SNP_GET_DERIVED_KEY, derived_key_request(**fields))
    print("✓ Changing any single field is unmapped")


def test_derived_key_string_is_stable():
    a = derived_key_request_to_string(DerivedKeyRequest(**KEY_REQ))
    b = derived_key_request_to_string(DerivedKeyRequest(**KEY_REQ))
    assert a == b
    assert derived_key_request_to_string(DerivedKeyRequest(root_key_select=0x10)) != \
        derived_key_request_to_string(DerivedKeyRequest(guest_field_select=0x10))


def test_derived_key_without_keys():
    device = tc_device(report_cases(), signer=SIGNER)
    device.open()
    with pytest.raises(NoKeysError):
        device.ioctl(IOC_SNP_GET_DERIVED_KEY, derived_key_request(**KEY_REQ))


def test_invalid_command():
    device = make_device()
    with pytest.raises(InvalidCommandError):
        device.ioctl(0xC0205303, report_request(AA_REPORT_DATA))


def test_mismatched_request_records():
    device = make_device()
    with pytest.raises(UnexpectedRequestError):
        device.ioctl(IOC_SNP_GET_DERIVED_KEY, report_request(AA_REPORT_DATA))
    with pytest.raises(UnexpectedRequestError):
        device.ioctl(IOC_SNP_GET_REPORT, "not a request")


def test_report_signature_matches_signer_public_key():
    """Test the embedded signature against the signer's public key directly"""
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import ec

    device = make_device()
    req = report_request(AA_REPORT_DATA)
    device.ioctl(IOC_SNP_GET_REPORT, req)
    parsed = SNPAttestationReport.from_bytes(bytes(req.resp_data.data[:REPORT_SIZE]))
    SIGNER.public_key().verify(parsed.get_signature_der(), parsed.signed_data, ec.ECDSA(hashes.SHA384()))


def test_signing_failures():
    """Test that signer and signature-embedding failures raise SigningError"""
    print("\n=== Test: Signing Failures ===")

    class BrokenSigner:
        def sign(self, data):
            raise RuntimeError("hsm offline")

    class HugeSigner:
        def sign(self, data):
            return 1 << (72 * 8), 1

    device = make_device()
    for signer in (BrokenSigner(), HugeSigner()):
        device.signer = signer
        req = report_request(AA_REPORT_DATA)
        with pytest.raises(SigningError):
            device.ioctl(IOC_SNP_GET_REPORT, req)
        assert req.resp_data.data == bytearray(len(req.resp_data.data)), "Buffer should be untouched"
    print("✓ Signer errors and oversized signatures rejected")

    device = make_device()
    data = b'\x09' * 64
    device.report_data_rsp[data.hex()] = GetReportResponse(report=bytes(new_report(data))[:REPORT_SIZE - 1])
    req = report_request(data)
    with pytest.raises(SigningError):
        device.ioctl(IOC_SNP_GET_REPORT, req)
    assert req.resp_data.data == bytearray(len(req.resp_data.data))
    print("✓ Short template rejected")


def test_product():
    device = Device()
    assert device.product() == default_sev_product()
    genoa = SevProduct(SevProductName.GENOA, machine_stepping=0)
    device.sev_product = genoa
    assert device.product() == genoa


def test_setup_logging():
    import logging
    from snpmock.config import setup_logging
    setup_logging("DEBUG")
    logger = logging.getLogger("snpmock")
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    setup_logging("DEBUG")
    assert len(logger.handlers) == 1


def main():
    """Run all tests"""
    print("\n" + "=" * 60)
    print("  UNIT TESTS: Fake Guest Device")
    print("=" * 60)
    for name, fn in sorted(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
    print("\n" + "=" * 60)
    print("  🎉 ALL TESTS PASSED!")
    print("=" * 60 + "\n")


if __name__ == "__main__":
    main()
