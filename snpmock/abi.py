"""
AMD SEV-SNP report layout, signatures, product metadata and certificate tables

Only the parts of the ABI the fake guest device needs are modelled here: the
signed region of an attestation report, where the signature lives, how the
GHCB extended-report certificate table is laid out, and the extra platform
info record appended to it by the configfs-tsm quote path.

References:
- AMD SEV-SNP ABI Specification: https://www.amd.com/system/files/TechDocs/56860.pdf
- GHCB Specification: https://www.amd.com/system/files/TechDocs/56421-guest-hypervisor-communication-block-standardization.pdf
"""

import struct
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature


# AMD SEV-SNP Report Structure Constants
REPORT_SIZE = 1184  # Total report size in bytes
SIGNED_DATA_SIZE = 0x2A0  # First 672 bytes are signed
SIGNATURE_OFFSET = 0x2A0
SIGNATURE_SIZE = 512  # r and s, 72 bytes each, rest reserved
SIGNATURE_COMPONENT_SIZE = 72
REPORT_DATA_SIZE = 64

# Field offsets (from AMD SEV-SNP ABI specification)
VERSION_OFFSET = 0x000
GUEST_SVN_OFFSET = 0x004
POLICY_OFFSET = 0x008
VMPL_OFFSET = 0x030
SIGNATURE_ALGO_OFFSET = 0x034
CURRENT_TCB_OFFSET = 0x038
PLATFORM_INFO_OFFSET = 0x040
REPORT_DATA_OFFSET = 0x050
MEASUREMENT_OFFSET = 0x090
REPORTED_TCB_OFFSET = 0x190
CHIP_ID_OFFSET = 0x1A0
COMMITTED_TCB_OFFSET = 0x1E0
LAUNCH_TCB_OFFSET = 0x1F0

SIGNATURE_ALGO_ECDSA_P384_SHA384 = 1

# Certificate table (GHCB extended guest request)
CERT_TABLE_ENTRY_SIZE = 24  # GUID(16) + offset(4) + length(4)
VCEK_GUID = uuid.UUID("63da758d-e664-4564-adc5-f4b93be8accd")
ASK_GUID = uuid.UUID("4ab7b379-bbac-4fe4-a02f-05aef327c782")
ARK_GUID = uuid.UUID("c0b406a4-a803-4952-9743-3fb6014cd0ae")
EXTRA_PLATFORM_INFO_GUID = uuid.UUID("ecae0c0f-9502-43b1-afa2-0ae2e0d565b6")

EXTRA_PLATFORM_INFO_V0_SIZE = 8  # size(4) + cpuid1_eax(4)

# CPUID Fn0000_0001_EAX with stepping and reserved bits cleared
CPUID_PRODUCT_MASK = 0x0FFF0FF0


class SevFirmwareStatus(IntEnum):
    """Firmware status written to the exitinfo2 slot of a guest request.

    The low 32 bits come from the PSP, the high 32 bits from the hypervisor.
    """
    SUCCESS = 0x00
    INVALID_PLATFORM_STATE = 0x01
    INVALID_GUEST_STATE = 0x02
    INVALID_CONFIG = 0x03
    INVALID_LENGTH = 0x04
    POLICY_FAILURE = 0x0C
    INVALID_PARAM = 0x16
    RESOURCE_LIMIT = 0x17
    AUTH_FAILURE = 0x1B
    GUEST_REQUEST_INVALID_LENGTH = 0x1_0000_0000
    GUEST_REQUEST_BUSY = 0x2_0000_0000


# Alias used by the extended report size probe
GUEST_REQUEST_INVALID_LENGTH = SevFirmwareStatus.GUEST_REQUEST_INVALID_LENGTH


class EsResult(IntEnum):
    """Result of the encrypted-state guest request exit"""
    OK = 0
    UNSUPPORTED = 1
    VMM_ERROR = 2
    DECODE_FAILED = 3
    EXCEPTION = 4
    RETRY = 5


class SevProductName(IntEnum):
    UNKNOWN = 0
    MILAN = 1
    GENOA = 2
    TURIN = 3


# Family / model bits of CPUID leaf 1 EAX per product
_PRODUCT_CPUID1_EAX = {
    SevProductName.MILAN: 0x00A00F10,  # family 19h model 01h
    SevProductName.GENOA: 0x00A10F10,  # family 19h model 11h
    SevProductName.TURIN: 0x00B00F20,  # family 1Ah model 02h
}


@dataclass(frozen=True)
class SevProduct:
    """Product line and stepping of the (simulated) AMD processor"""
    name: SevProductName
    machine_stepping: Optional[int] = None

    def kds_name(self) -> str:
        """Product name as used in AMD KDS URLs"""
        return self.name.name.capitalize()


DEFAULT_SEV_PRODUCT = SevProduct(name=SevProductName.MILAN, machine_stepping=1)


def default_sev_product() -> SevProduct:
    """Product reported when no product metadata is configured"""
    return DEFAULT_SEV_PRODUCT


def masked_cpuid1_eax_from_product(product: Optional[SevProduct]) -> int:
    """CPUID leaf 1 EAX for ``product``, masked to family and model."""
    if product is None:
        return 0
    return _PRODUCT_CPUID1_EAX.get(product.name, 0) & CPUID_PRODUCT_MASK


@dataclass
class TCBVersion:
    """Trusted Computing Base Version"""
    bootloader: int = 0
    tee: int = 0
    snp: int = 0
    microcode: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> 'TCBVersion':
        """Parse TCB version from 8 bytes"""
        return cls.from_int(struct.unpack_from('<Q', data)[0])

    @classmethod
    def from_int(cls, value: int) -> 'TCBVersion':
        return cls(
            bootloader=value & 0xFF,
            tee=(value >> 8) & 0xFF,
            snp=(value >> 48) & 0xFF,
            microcode=(value >> 56) & 0xFF,
        )

    def to_int(self) -> int:
        return (self.bootloader | (self.tee << 8)
                | (self.snp << 48) | (self.microcode << 56))

    def to_bytes(self) -> bytes:
        return struct.pack('<Q', self.to_int())

    def __str__(self) -> str:
        return f"bl={self.bootloader} tee={self.tee} snp={self.snp} ucode={self.microcode}"


def new_report(
    report_data: bytes,
    version: int = 2,
    guest_svn: int = 0,
    policy: int = 0x30000,
    vmpl: int = 0,
    tcb: Optional[TCBVersion] = None,
    measurement: bytes = b'',
    chip_id: bytes = b'',
) -> bytearray:
    """Build an unsigned report body with the given fields set"""
    if len(report_data) != REPORT_DATA_SIZE:
        raise ValueError(f"report data must be {REPORT_DATA_SIZE} bytes, got {len(report_data)}")
    tcb_bytes = (tcb or TCBVersion()).to_bytes()
    report = bytearray(REPORT_SIZE)
    struct.pack_into('<I', report, VERSION_OFFSET, version)
    struct.pack_into('<I', report, GUEST_SVN_OFFSET, guest_svn)
    struct.pack_into('<Q', report, POLICY_OFFSET, policy)
    struct.pack_into('<I', report, VMPL_OFFSET, vmpl)
    struct.pack_into('<I', report, SIGNATURE_ALGO_OFFSET, SIGNATURE_ALGO_ECDSA_P384_SHA384)
    for offset in (CURRENT_TCB_OFFSET, REPORTED_TCB_OFFSET, COMMITTED_TCB_OFFSET, LAUNCH_TCB_OFFSET):
        report[offset:offset + 8] = tcb_bytes
    report[REPORT_DATA_OFFSET:REPORT_DATA_OFFSET + REPORT_DATA_SIZE] = report_data
    report[MEASUREMENT_OFFSET:MEASUREMENT_OFFSET + len(measurement[:48])] = measurement[:48]
    report[CHIP_ID_OFFSET:CHIP_ID_OFFSET + len(chip_id[:64])] = chip_id[:64]
    return report


def signed_component(report: bytes) -> bytes:
    """The portion of a report covered by its signature"""
    if len(report) < REPORT_SIZE:
        raise ValueError(f"Report too short: {len(report)} bytes, expected {REPORT_SIZE}")
    return bytes(report[:SIGNED_DATA_SIZE])


def set_signature(r: int, s: int, report: bytearray) -> None:
    """Embed an ECDSA P-384 signature into ``report`` in place.

    AMD stores r and s as little-endian integers zero-padded to 72 bytes.
    """
    if len(report) < REPORT_SIZE:
        raise ValueError(f"Report too short: {len(report)} bytes, expected {REPORT_SIZE}")
    try:
        r_bytes = r.to_bytes(SIGNATURE_COMPONENT_SIZE, 'little')
        s_bytes = s.to_bytes(SIGNATURE_COMPONENT_SIZE, 'little')
    except OverflowError as e:
        raise ValueError(f"signature component too large: {e}") from e
    signature = bytearray(SIGNATURE_SIZE)
    signature[:SIGNATURE_COMPONENT_SIZE] = r_bytes
    signature[SIGNATURE_COMPONENT_SIZE:2 * SIGNATURE_COMPONENT_SIZE] = s_bytes
    report[SIGNATURE_OFFSET:SIGNATURE_OFFSET + SIGNATURE_SIZE] = signature


def report_signature(report: bytes) -> Tuple[int, int]:
    """Read (r, s) back out of a signed report"""
    r = int.from_bytes(report[SIGNATURE_OFFSET:SIGNATURE_OFFSET + SIGNATURE_COMPONENT_SIZE], 'little')
    s_offset = SIGNATURE_OFFSET + SIGNATURE_COMPONENT_SIZE
    s = int.from_bytes(report[s_offset:s_offset + SIGNATURE_COMPONENT_SIZE], 'little')
    return r, s


@dataclass
class CertTableEntry:
    guid: uuid.UUID
    data: bytes


@dataclass
class CertTable:
    """GHCB certificate table: GUID/offset/length entries, then the data"""
    entries: List[CertTableEntry] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, blob: bytes) -> 'CertTable':
        """Parse a certificate table. An empty blob is an empty table."""
        entries = []
        if not blob:
            return cls(entries)
        pos = 0
        while True:
            if pos + CERT_TABLE_ENTRY_SIZE > len(blob):
                raise ValueError("certificate table is not zero-terminated")
            raw_guid = blob[pos:pos + 16]
            offset, length = struct.unpack_from('<II', blob, pos + 16)
            pos += CERT_TABLE_ENTRY_SIZE
            if raw_guid == bytes(16) and offset == 0 and length == 0:
                break
            if offset + length > len(blob):
                raise ValueError(
                    f"certificate entry {uuid.UUID(bytes=raw_guid)} out of bounds: "
                    f"{offset}+{length} > {len(blob)}"
                )
            entries.append(CertTableEntry(uuid.UUID(bytes=raw_guid), bytes(blob[offset:offset + length])))
        return cls(entries)

    def to_bytes(self) -> bytes:
        header_size = (len(self.entries) + 1) * CERT_TABLE_ENTRY_SIZE
        header = bytearray()
        body = bytearray()
        for entry in self.entries:
            header += entry.guid.bytes
            header += struct.pack('<II', header_size + len(body), len(entry.data))
            body += entry.data
        header += bytes(CERT_TABLE_ENTRY_SIZE)
        return bytes(header + body)

    def get(self, guid: uuid.UUID) -> Optional[bytes]:
        for entry in self.entries:
            if entry.guid == guid:
                return entry.data
        return None

    def set(self, guid: uuid.UUID, data: bytes) -> None:
        for entry in self.entries:
            if entry.guid == guid:
                entry.data = data
                return
        self.entries.append(CertTableEntry(guid, data))


@dataclass
class ExtraPlatformInfo:
    """Platform details a quote carries next to the certificates"""
    size: int
    cpuid1_eax: int

    def to_bytes(self) -> bytes:
        return struct.pack('<II', self.size, self.cpuid1_eax)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ExtraPlatformInfo':
        if len(data) < EXTRA_PLATFORM_INFO_V0_SIZE:
            raise ValueError(f"extra platform info too short: {len(data)} bytes")
        size, cpuid1_eax = struct.unpack_from('<II', data)
        return cls(size=size, cpuid1_eax=cpuid1_eax)


def extend_platform_cert_table(certs: bytes, info: ExtraPlatformInfo) -> bytes:
    """Return ``certs`` with an extra platform info entry added or replaced"""
    table = CertTable.from_bytes(certs)
    table.set(EXTRA_PLATFORM_INFO_GUID, info.to_bytes())
    return table.to_bytes()


@dataclass
class SNPAttestationReport:
    """Parsed AMD SEV-SNP Attestation Report"""
    version: int
    guest_svn: int
    policy: int
    vmpl: int
    signature_algo: int  # 1 = ECDSA P-384
    current_tcb: TCBVersion
    platform_info: int
    report_data: bytes  # 64 bytes - client nonce goes here
    measurement: bytes  # 48 bytes
    reported_tcb: TCBVersion
    chip_id: bytes  # 64 bytes
    signature_r: int
    signature_s: int

    # Raw data for verification
    raw_report: bytes
    signed_data: bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SNPAttestationReport':
        """Parse attestation report from binary data"""
        if len(data) < REPORT_SIZE:
            raise ValueError(f"Report too short: {len(data)} bytes, expected {REPORT_SIZE}")
        r, s = report_signature(data)
        return cls(
            version=struct.unpack_from('<I', data, VERSION_OFFSET)[0],
            guest_svn=struct.unpack_from('<I', data, GUEST_SVN_OFFSET)[0],
            policy=struct.unpack_from('<Q', data, POLICY_OFFSET)[0],
            vmpl=struct.unpack_from('<I', data, VMPL_OFFSET)[0],
            signature_algo=struct.unpack_from('<I', data, SIGNATURE_ALGO_OFFSET)[0],
            current_tcb=TCBVersion.from_bytes(data[CURRENT_TCB_OFFSET:CURRENT_TCB_OFFSET + 8]),
            platform_info=struct.unpack_from('<Q', data, PLATFORM_INFO_OFFSET)[0],
            report_data=bytes(data[REPORT_DATA_OFFSET:REPORT_DATA_OFFSET + REPORT_DATA_SIZE]),
            measurement=bytes(data[MEASUREMENT_OFFSET:MEASUREMENT_OFFSET + 48]),
            reported_tcb=TCBVersion.from_bytes(data[REPORTED_TCB_OFFSET:REPORTED_TCB_OFFSET + 8]),
            chip_id=bytes(data[CHIP_ID_OFFSET:CHIP_ID_OFFSET + 64]),
            signature_r=r,
            signature_s=s,
            raw_report=bytes(data[:REPORT_SIZE]),
            signed_data=bytes(data[:SIGNED_DATA_SIZE]),
        )

    def get_signature_der(self) -> bytes:
        """Convert AMD signature format to DER-encoded ECDSA signature"""
        return encode_dss_signature(self.signature_r, self.signature_s)

    def verify_nonce(self, expected_nonce: bytes) -> bool:
        """Verify that the report contains the expected nonce in report_data"""
        return self.report_data[:len(expected_nonce)] == expected_nonce
