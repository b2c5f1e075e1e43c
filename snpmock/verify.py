"""Verify reports and certificate tables produced by the fake device"""

import logging
from typing import Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from .abi import (
    ARK_GUID, ASK_GUID, SIGNATURE_ALGO_ECDSA_P384_SHA384, VCEK_GUID,
    CertTable, SNPAttestationReport,
)

logger = logging.getLogger(__name__)


class SNPReportVerifier:
    """Verify SEV-SNP reports against an ARK -> ASK -> VCEK chain"""

    def __init__(self):
        self.ark_cert: Optional[x509.Certificate] = None  # AMD Root Key
        self.ask_cert: Optional[x509.Certificate] = None  # AMD Signing Key
        self.vcek_cert: Optional[x509.Certificate] = None  # Versioned Chip Endorsement Key

    def load_cert_table(self, blob: bytes):
        """Load DER certificates from a GHCB certificate table"""
        table = CertTable.from_bytes(blob)
        for guid, attr in ((ARK_GUID, 'ark_cert'), (ASK_GUID, 'ask_cert'), (VCEK_GUID, 'vcek_cert')):
            der = table.get(guid)
            if der is not None:
                setattr(self, attr, x509.load_der_x509_certificate(der))

    def load_cert_chain_from_pem(self, pem_data: bytes):
        """Load the KDS cert_chain (ASK then ARK)"""
        certs = x509.load_pem_x509_certificates(pem_data)
        if len(certs) >= 2:
            self.ask_cert, self.ark_cert = certs[0], certs[1]

    def load_vcek_from_pem(self, vcek_pem: bytes):
        """Load VCEK certificate separately"""
        self.vcek_cert = x509.load_pem_x509_certificate(vcek_pem)

    @staticmethod
    def _check(issuer: x509.Certificate, cert: x509.Certificate) -> None:
        issuer.public_key().verify(
            cert.signature,
            cert.tbs_certificate_bytes,
            ec.ECDSA(hashes.SHA384()),
        )

    def verify_cert_chain(self) -> Tuple[bool, str]:
        """
        Verify the certificate chain: ARK -> ASK -> VCEK

        Returns:
            (is_valid, message)
        """
        if not self.ark_cert or not self.ask_cert:
            return False, "Certificate chain not loaded"
        for issuer, cert, name in ((self.ark_cert, self.ark_cert, "ARK"),
                                   (self.ark_cert, self.ask_cert, "ASK"),
                                   (self.ask_cert, self.vcek_cert, "VCEK")):
            if cert is None:
                continue
            try:
                self._check(issuer, cert)
            except InvalidSignature:
                return False, f"{name} certificate signature invalid"
        return True, "Certificate chain valid"

    def verify_report_signature(self, report: SNPAttestationReport) -> Tuple[bool, str]:
        """
        Verify the attestation report signature against VCEK.

        Returns:
            (is_valid, message)
        """
        if not self.vcek_cert:
            return False, "VCEK certificate not loaded"
        if report.signature_algo != SIGNATURE_ALGO_ECDSA_P384_SHA384:
            return False, f"Unsupported signature algorithm: {report.signature_algo}"
        try:
            self.vcek_cert.public_key().verify(
                report.get_signature_der(),
                report.signed_data,
                ec.ECDSA(hashes.SHA384()),
            )
        except InvalidSignature:
            logger.debug("Signature check failed for report %s", report.report_data.hex()[:16])
            return False, "Report signature invalid - not signed by VCEK"
        return True, "Report signature valid"


def verify_report_bytes(report_bytes: bytes, certs: bytes) -> Tuple[bool, str]:
    """Check a raw report against the chain in ``certs`` (a cert table)"""
    verifier = SNPReportVerifier()
    verifier.load_cert_table(certs)
    ok, msg = verifier.verify_cert_chain()
    if not ok:
        return ok, msg
    return verifier.verify_report_signature(SNPAttestationReport.from_bytes(report_bytes))
