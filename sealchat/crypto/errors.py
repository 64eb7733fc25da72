"""
Error taxonomy shared by the key distribution protocol and its adapters.
"""


class E2EError(Exception):
    """Base exception for end-to-end encryption failures"""
    pass


class StorageError(E2EError):
    """Local persistence is unavailable or holds corrupted data"""
    pass


class DirectoryError(E2EError):
    """A server-side directory (device keys or key envelopes) failed"""
    pass


class EnvelopeConflict(DirectoryError):
    """A conditional envelope write found envelopes already stored for the scope"""
    pass


class KeyUnavailable(E2EError):
    """No path exists right now to recover a usable conversation key"""
    pass


class CryptoError(E2EError):
    """Base exception for cryptographic primitive failures"""
    pass


class EnvelopeError(CryptoError):
    """Sealing or opening a key envelope failed"""
    pass


class AuthenticationFailure(CryptoError):
    """AEAD authentication tag did not verify"""
    pass


class TransportError(E2EError):
    """The message/file transport failed"""
    pass
