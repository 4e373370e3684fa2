from handle_sdk.certificates.schemas import (
    WITNESS_TYPE,
    Certificate,
    CertificateData,
    Witness,
)
from handle_sdk.certificates.validation import (
    build_certificate,
    extract_data,
    is_certificate,
    is_certificate_data,
    parse_certificate,
    parse_certificate_data,
)

__all__ = [
    "WITNESS_TYPE",
    "Witness",
    "CertificateData",
    "Certificate",
    "is_certificate_data",
    "is_certificate",
    "parse_certificate_data",
    "parse_certificate",
    "extract_data",
    "build_certificate",
]
