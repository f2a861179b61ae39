"""Password transport decryption and at-rest hashing.

Clients never send a plaintext password. They encrypt it with the shared
transport passphrase in the OpenSSL ``Salted__`` envelope that CryptoJS
produces for ``AES.encrypt(text, passphrase)``:

    base64("Salted__" || salt[8] || AES-256-CBC(PKCS7(text)))

with key and IV derived by ``EVP_BytesToKey`` (MD5, one round). The decrypted
text is then stretched with PBKDF2-HMAC-SHA512 (1000 iterations, 64-byte key)
over the hex salt stored beside the credential.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PBKDF2_ITERATIONS = 1000
PBKDF2_KEY_LENGTH = 64
SALT_BYTES = 16

_OPENSSL_MAGIC = b"Salted__"
_AES_KEY_BYTES = 32
_AES_BLOCK_BYTES = 16


class PasswordDecryptError(ValueError):
    """The transmitted password blob is not a valid envelope for our passphrase."""


def _evp_bytes_to_key(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    # OpenSSL's legacy derivation; MD5 is what the client side uses.
    derived = b""
    block = b""
    while len(derived) < _AES_KEY_BYTES + _AES_BLOCK_BYTES:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:_AES_KEY_BYTES], derived[_AES_KEY_BYTES:_AES_KEY_BYTES + _AES_BLOCK_BYTES]


def encrypt_transport_password(password: str, passphrase: str) -> str:
    """Produce the envelope a browser client would send for ``password``."""
    salt = secrets.token_bytes(8)
    key, iv = _evp_bytes_to_key(passphrase.encode(), salt)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(password.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(_OPENSSL_MAGIC + salt + ciphertext).decode("ascii")


def decrypt_transport_password(blob: str, passphrase: str) -> str:
    """Recover the plaintext password from a client envelope.

    Raises:
        PasswordDecryptError: on malformed base64, a missing ``Salted__``
            header, bad padding (usually a wrong passphrase) or an empty
            result.
    """
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PasswordDecryptError("password payload is not base64") from exc
    if len(raw) < 32 or not raw.startswith(_OPENSSL_MAGIC):
        raise PasswordDecryptError("password payload has no salt header")
    salt, ciphertext = raw[8:16], raw[16:]
    if len(ciphertext) % _AES_BLOCK_BYTES:
        raise PasswordDecryptError("password payload is truncated")

    key, iv = _evp_bytes_to_key(passphrase.encode(), salt)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        plain = unpadder.update(padded) + unpadder.finalize()
        password = plain.decode("utf-8")
    except ValueError as exc:
        raise PasswordDecryptError("password payload could not be decrypted") from exc
    if not password:
        raise PasswordDecryptError("password payload is empty")
    return password


def new_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def derive_password_hash(password: str, salt: str) -> str:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=PBKDF2_KEY_LENGTH,
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8")).hex()


def password_matches(password: str, salt: str, expected_hash: str) -> bool:
    return hmac.compare_digest(derive_password_hash(password, salt), expected_hash)
