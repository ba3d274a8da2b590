"""Attestation error taxonomy; each error carries the HTTP status it maps to."""


class AttestationError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(AttestationError):
    """Malformed address, pseudonym, expiry or schema kind."""
    status_code = 400


class SignerNotReadyError(AttestationError):
    """No usable signing key or verifying contract configured."""
    status_code = 500
