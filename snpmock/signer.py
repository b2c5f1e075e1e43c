"""Fake AMD signing hierarchy for the simulated guest device.

Generates an ARK -> ASK -> VCEK chain of ECDSA P-384 keys and signs report
bodies with the VCEK, so reports coming out of the fake device verify the
same way reports from real hardware do.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from .abi import ARK_GUID, ASK_GUID, VCEK_GUID, CertTable

logger = logging.getLogger(__name__)

CERT_VALIDITY = datetime.timedelta(days=365 * 25)


def _name(common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "Engineering"),
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.LOCALITY_NAME, "Santa Clara"),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "CA"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Advanced Micro Devices"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _issue(subject: str, key, issuer: str, issuer_key, ca: bool) -> x509.Certificate:
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA384())
    )


@dataclass
class AmdSigner:
    """Keys and certificates of a simulated AMD signing hierarchy"""
    ark_key: ec.EllipticCurvePrivateKey
    ask_key: ec.EllipticCurvePrivateKey
    vcek_key: ec.EllipticCurvePrivateKey
    ark: x509.Certificate
    ask: x509.Certificate
    vcek: x509.Certificate

    @classmethod
    def generate(cls, product_name: str = "Milan") -> 'AmdSigner':
        """Create a fresh chain for ``product_name``"""
        ark_key = ec.generate_private_key(ec.SECP384R1())
        ask_key = ec.generate_private_key(ec.SECP384R1())
        vcek_key = ec.generate_private_key(ec.SECP384R1())
        ark_name = f"ARK-{product_name}"
        ask_name = f"SEV-{product_name}"
        ark = _issue(ark_name, ark_key, ark_name, ark_key, ca=True)
        ask = _issue(ask_name, ask_key, ark_name, ark_key, ca=True)
        vcek = _issue("SEV-VCEK", vcek_key, ask_name, ask_key, ca=False)
        logger.debug("Generated fake %s signing chain", product_name)
        return cls(ark_key, ask_key, vcek_key, ark, ask, vcek)

    def sign(self, data: bytes) -> Tuple[int, int]:
        """ECDSA P-384/SHA-384 signature of ``data`` as (r, s)"""
        der = self.vcek_key.sign(data, ec.ECDSA(hashes.SHA384()))
        return decode_dss_signature(der)

    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.vcek_key.public_key()

    def cert_table(self) -> bytes:
        """GHCB certificate table holding the DER VCEK, ASK and ARK"""
        table = CertTable()
        table.set(VCEK_GUID, self.vcek.public_bytes(serialization.Encoding.DER))
        table.set(ASK_GUID, self.ask.public_bytes(serialization.Encoding.DER))
        table.set(ARK_GUID, self.ark.public_bytes(serialization.Encoding.DER))
        return table.to_bytes()

    def cert_chain_pem(self) -> bytes:
        """ASK and ARK in the order AMD KDS serves them from cert_chain"""
        return (self.ask.public_bytes(serialization.Encoding.PEM)
                + self.ark.public_bytes(serialization.Encoding.PEM))

    def vcek_pem(self) -> bytes:
        return self.vcek.public_bytes(serialization.Encoding.PEM)
