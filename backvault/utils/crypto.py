"""
Authenticated encryption for backup artifacts.

AES-256-CBC with PKCS7 padding, authenticated with HMAC-SHA256
(encrypt-then-MAC). The key is derived from a password with PBKDF2 and a
random salt stored in the blob:

    base64(salt(16) || IV(16) || ciphertext || HMAC(32))

The HMAC covers salt, IV and ciphertext and is verified before any
decryption takes place.
"""

import os
import base64
import binascii
import secrets
import string

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from backvault.backup.errors import EncryptionError

SALT_SIZE = 16
KEY_SIZE = 32
MAC_SIZE = 32
KDF_ITERATIONS = 10000
BLOCK_SIZE = algorithms.AES.block_size


def derive_key(password: str, salt: bytes) -> bytes:
    """
    Derive a 256-bit key from a password.

    Args:
        password: Encryption password
        salt: Random salt stored alongside the ciphertext

    Returns:
        32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode())


def _random_bytes(size: int) -> bytes:
    try:
        return os.urandom(size)
    except NotImplementedError as e:
        raise EncryptionError(f"Failed to obtain random bytes: {e}", operation='encrypt')


def _mac(key: bytes, data: bytes) -> hmac.HMAC:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    return h


def encrypt(data: bytes, password: str) -> str:
    """
    Encrypt bytes with a password.

    Args:
        data: Plaintext bytes
        password: Encryption password (must not be empty)

    Returns:
        Base64-encoded blob

    Raises:
        EncryptionError: If the password is empty or randomness is unavailable
    """
    if not password:
        raise EncryptionError("Encryption password must not be empty", operation='encrypt')

    salt = _random_bytes(SALT_SIZE)
    iv = _random_bytes(BLOCK_SIZE // 8)
    key = derive_key(password, salt)

    padder = padding.PKCS7(BLOCK_SIZE).padder()
    padded = padder.update(data) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    payload = salt + iv + ciphertext
    tag = _mac(key, payload).finalize()

    return base64.b64encode(payload + tag).decode('ascii')


def decrypt(blob: str, password: str) -> bytes:
    """
    Decrypt a blob produced by encrypt().

    Args:
        blob: Base64-encoded blob
        password: Encryption password

    Returns:
        Plaintext bytes

    Raises:
        EncryptionError: If the password is empty, the blob is malformed or
            authentication fails
    """
    if not password:
        raise EncryptionError("Decryption password must not be empty", operation='decrypt')

    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError(f"Malformed encrypted data: {e}", operation='decrypt')

    iv_size = BLOCK_SIZE // 8
    header_size = SALT_SIZE + iv_size
    if len(raw) < header_size + iv_size + MAC_SIZE or (len(raw) - header_size - MAC_SIZE) % iv_size:
        raise EncryptionError("Malformed encrypted data: invalid length", operation='decrypt')

    payload, tag = raw[:-MAC_SIZE], raw[-MAC_SIZE:]
    salt, iv, ciphertext = payload[:SALT_SIZE], payload[SALT_SIZE:header_size], payload[header_size:]
    key = derive_key(password, salt)

    try:
        _mac(key, payload).verify(tag)
    except InvalidSignature:
        raise EncryptionError("Authentication failed: wrong password or corrupted data", operation='decrypt')

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(BLOCK_SIZE).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise EncryptionError(f"Invalid padding: {e}", operation='decrypt')


def encrypt_file(source_path: str, dest_path: str, password: str) -> str:
    """
    Encrypt a file into another file.

    The whole file is held in memory.

    Returns:
        Path of the encrypted file

    Raises:
        EncryptionError: If reading, encrypting or writing fails
    """
    try:
        with open(source_path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise EncryptionError(f"Failed to read {source_path}: {e}", operation='encrypt', path=source_path)

    blob = encrypt(data, password)

    try:
        with open(dest_path, 'w') as f:
            f.write(blob)
    except OSError as e:
        raise EncryptionError(f"Failed to write {dest_path}: {e}", operation='encrypt', path=dest_path)

    return dest_path


def decrypt_file(source_path: str, dest_path: str, password: str) -> str:
    """
    Decrypt a file written by encrypt_file().

    Returns:
        Path of the decrypted file

    Raises:
        EncryptionError: If reading, decrypting or writing fails
    """
    try:
        with open(source_path, 'r') as f:
            blob = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise EncryptionError(f"Failed to read {source_path}: {e}", operation='decrypt', path=source_path)

    data = decrypt(blob.strip(), password)

    try:
        with open(dest_path, 'wb') as f:
            f.write(data)
    except OSError as e:
        raise EncryptionError(f"Failed to write {dest_path}: {e}", operation='decrypt', path=dest_path)

    return dest_path


def generate_password(length: int = 32) -> str:
    """Generate a random password with letters, digits and symbols."""
    if length < 12:
        raise ValueError("Password length must be at least 12")

    alphabet = string.ascii_letters + string.digits + '!@#$%^&*()-_=+'
    while True:
        password = ''.join(secrets.choice(alphabet) for _ in range(length))
        if is_password_strong(password):
            return password


def is_password_strong(password: str) -> bool:
    """
    Check a password has at least 12 characters mixing upper and lower
    case letters, digits and symbols.
    """
    if len(password) < 12:
        return False
    return (
        any(c.islower() for c in password)
        and any(c.isupper() for c in password)
        and any(c.isdigit() for c in password)
        and any(not c.isalnum() for c in password)
    )
