"""PAdES document signature over the assembled PDF with pyHanko.

A credential is a PKCS#12 bundle (certificate + private key). Having none
configured is a supported mode (unsigned output); having one configured that
cannot be loaded is DependencyUnavailable.
"""
from __future__ import annotations

import io
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.sign import signers

from tripsign.core.settings import settings
from tripsign.exceptions import DependencyUnavailableException

logger = logging.getLogger("tripsign.pdf_signing")

SIGNATURE_FIELD = "Signature1"


@dataclass(frozen=True)
class SigningCredential:
    signer: signers.Signer
    reason: Optional[str] = None
    location: Optional[str] = None
    field_name: str = SIGNATURE_FIELD


def load_pkcs12(path: str, passphrase: Optional[bytes] = None) -> signers.SimpleSigner:
    if not os.path.exists(path):
        raise DependencyUnavailableException(f"Signing certificate not found at {path}")
    signer = signers.SimpleSigner.load_pkcs12(pfx_file=path, passphrase=passphrase)
    if signer is None:
        # pyHanko logs the underlying error and returns None.
        raise DependencyUnavailableException(f"Signing certificate at {path} could not be loaded")
    return signer


class CredentialProvider(ABC):
    @abstractmethod
    def get_credential(self) -> Optional[SigningCredential]:
        """The credential to sign with, or None for unsigned output."""


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, credential: Optional[SigningCredential] = None):
        self.credential = credential

    def get_credential(self) -> Optional[SigningCredential]:
        return self.credential


class EnvCredentialProvider(CredentialProvider):
    """Reads SIGNING_CERT_PATH / SIGNING_CERT_PASSPHRASE from settings; loads once."""

    def __init__(
        self,
        cert_path: Optional[str] = None,
        passphrase: Optional[bytes] = None,
        reason: Optional[str] = None,
        location: Optional[str] = None,
    ):
        self.cert_path = cert_path if cert_path is not None else settings.signing_cert_path
        self.passphrase = passphrase if passphrase is not None else settings.signing_cert_passphrase
        self.reason = reason or settings.signing_reason
        self.location = location or settings.signing_location
        self._credential: Optional[SigningCredential] = None

    def get_credential(self) -> Optional[SigningCredential]:
        if not self.cert_path:
            return None
        if self._credential is None:
            signer = load_pkcs12(self.cert_path, self.passphrase)
            self._credential = SigningCredential(signer=signer, reason=self.reason, location=self.location)
            logger.info(f"Loaded signing credential from {self.cert_path}")
        return self._credential


def sign_pdf(pdf_bytes: bytes, credential: SigningCredential, password: Optional[str] = None) -> bytes:
    """Append an incremental update carrying a CMS signature over the document.

    ``password`` opens an encrypted input; the update is encrypted the same way.
    """
    writer = IncrementalPdfFileWriter(io.BytesIO(pdf_bytes), strict=False)
    if password is not None:
        writer.encrypt(password)
    meta = signers.PdfSignatureMetadata(
        field_name=credential.field_name,
        reason=credential.reason,
        location=credential.location,
    )
    out = signers.sign_pdf(writer, meta, signer=credential.signer)
    return out.getvalue()
