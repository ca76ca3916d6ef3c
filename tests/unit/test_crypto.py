"""
Unit tests for the encryption codec (backvault/utils/crypto.py).

Tests authenticated encryption of bytes and files.
"""

import base64
from unittest.mock import patch

import pytest

from backvault.backup.errors import EncryptionError
from backvault.utils.crypto import (
    decrypt,
    decrypt_file,
    encrypt,
    encrypt_file,
    generate_password,
    is_password_strong,
)


def _flip_bit(blob: str, index: int) -> str:
    raw = bytearray(base64.b64decode(blob))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


class TestEncryptDecrypt:
    """Test encrypt()/decrypt()."""

    @pytest.mark.parametrize('data', [b'', b'a', b'x' * 16, b'\x00\xff' * 1000])
    def test_round_trip(self, data):
        assert decrypt(encrypt(data, 'password123'), 'password123') == data

    def test_blob_layout(self):
        """Test blob is salt + IV + padded ciphertext + HMAC."""
        raw = base64.b64decode(encrypt(b'hello', 'pw'))

        # 16 salt + 16 IV + 16 ciphertext block + 32 HMAC
        assert len(raw) == 80

    def test_random_salt_and_iv(self):
        """Test the same input never encrypts to the same blob."""
        assert encrypt(b'same', 'pw') != encrypt(b'same', 'pw')

    def test_wrong_password_fails(self):
        blob = encrypt(b'secret', 'right')

        with pytest.raises(EncryptionError):
            decrypt(blob, 'wrong')

    @pytest.mark.parametrize('index', [0, 20, 40, -1, -20])
    def test_tampering_fails(self, index):
        """Test flipping a bit anywhere in salt, IV, ciphertext or HMAC fails closed."""
        blob = encrypt(b'some backup bytes', 'pw')

        with pytest.raises(EncryptionError):
            decrypt(_flip_bit(blob, index), 'pw')

    def test_empty_password_rejected(self):
        with pytest.raises(EncryptionError):
            encrypt(b'data', '')

        with pytest.raises(EncryptionError):
            decrypt('AAAA', '')

    def test_malformed_base64(self):
        with pytest.raises(EncryptionError):
            decrypt('not base64!!', 'pw')

    def test_truncated_blob(self):
        blob = encrypt(b'data', 'pw')
        raw = base64.b64decode(blob)[:40]

        with pytest.raises(EncryptionError):
            decrypt(base64.b64encode(raw).decode(), 'pw')

    def test_randomness_failure_raises_encryption_error(self):
        with patch('backvault.utils.crypto.os.urandom', side_effect=NotImplementedError('no entropy')):
            with pytest.raises(EncryptionError):
                encrypt(b'data', 'pw')


class TestFileEncryption:
    """Test encrypt_file()/decrypt_file()."""

    def test_file_round_trip(self, tmp_path):
        source = tmp_path / 'backup.zip'
        source.write_bytes(b'PK archive bytes' * 50)

        encrypted = encrypt_file(str(source), str(tmp_path / 'backup.zip.enc'), 'pw')
        decrypted = decrypt_file(encrypted, str(tmp_path / 'restored.zip'), 'pw')

        assert (tmp_path / 'restored.zip').read_bytes() == source.read_bytes()
        assert decrypted == str(tmp_path / 'restored.zip')

    def test_missing_source(self, tmp_path):
        with pytest.raises(EncryptionError):
            encrypt_file(str(tmp_path / 'missing'), str(tmp_path / 'out'), 'pw')


class TestPasswords:
    """Test password helpers."""

    def test_generate_password_is_strong(self):
        password = generate_password(24)

        assert len(password) == 24
        assert is_password_strong(password)

    def test_generate_password_minimum_length(self):
        with pytest.raises(ValueError):
            generate_password(8)

    @pytest.mark.parametrize('password,expected', [
        ('Short1!', False),
        ('alllowercase123!', False),
        ('NoDigitsHere!!', False),
        ('NoSymbols12345', False),
        ('Str0ng&Password', True),
    ])
    def test_is_password_strong(self, password, expected):
        assert is_password_strong(password) is expected
