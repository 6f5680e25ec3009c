"""
Encryption of backup archives.

Two interchangeable variants, selected once at startup:
- GPGEncryptor: public-key encryption to a single imported recipient
- AES256Encryptor: passphrase based AES-256-CBC with a self-describing header

AES-256 file layout:
    [4-byte BE salt length][salt][4-byte BE IV length][IV][ciphertext...]
"""

import os
import re
import struct
import logging
from typing import Optional, List, Dict

import gnupg
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096
SALT_SIZE = 16
KDF_ITERATIONS = 100000
KEY_LENGTH = 32  # AES-256

# Full fingerprint, long id or short id
KEY_ID_PATTERN = re.compile(r"\A(?:[0-9A-F]{8}|[0-9A-F]{16}|[0-9A-F]{40})\Z")


class EncryptionError(Exception):
    """Raised when an archive cannot be encrypted or decrypted."""
    pass


def normalize_key_id(key_id: str) -> str:
    """
    Normalize a GPG key id to upper-case hex without spaces or 0x prefix.

    Raises:
        EncryptionError: Unless it is a 40 digit fingerprint or a 16/8 digit id
    """
    normalized = key_id.upper().replace(' ', '')
    if normalized.startswith('0X'):
        normalized = normalized[2:]
    if not KEY_ID_PATTERN.match(normalized):
        raise EncryptionError(
            "GPG key id must be a 40 digit fingerprint or a 16/8 digit hex key id"
        )
    return normalized


class Encryptor:
    """Common interface of the encryption variants."""

    method = None
    extension = None

    def encrypt(self, input_path: str, output_path: str):
        raise NotImplementedError

    def _remove_partial(self, output_path: str):
        if os.path.exists(output_path):
            try:
                os.remove(output_path)
            except OSError as e:
                logger.warning(f"Failed to remove partial encrypted file: {e}")


class GPGEncryptor(Encryptor):
    """
    Encrypts archives to a GPG public key.

    The configured armored key is imported into the keyring when no usable
    public key is present, or when none matches the configured key_id. With
    an explicit key_id the recipient must match a key's full fingerprint or
    its 16/8 digit id; otherwise the lexicographically first fingerprint wins.
    """

    method = 'gpg'
    extension = 'gpg'

    def __init__(self, public_key: Optional[str], key_id: Optional[str] = None,
                 gnupghome: Optional[str] = None, gpg: Optional[gnupg.GPG] = None):
        """
        Args:
            public_key: ASCII armored public key
            key_id: Optional fingerprint or short key id of the recipient
            gnupghome: Optional keyring directory
            gpg: Optional pre-built gnupg.GPG instance
        """
        self.public_key = public_key
        self.key_id = normalize_key_id(key_id) if key_id else None
        self.gnupghome = gnupghome
        self._gpg = gpg

    @property
    def gpg(self) -> gnupg.GPG:
        if self._gpg is None:
            try:
                if self.gnupghome:
                    os.makedirs(self.gnupghome, mode=0o700, exist_ok=True)
                    self._gpg = gnupg.GPG(gnupghome=self.gnupghome)
                else:
                    self._gpg = gnupg.GPG()
            except (OSError, ValueError) as e:
                raise EncryptionError(f"Failed to initialize GPG: {e}")
        return self._gpg

    def encrypt(self, input_path: str, output_path: str):
        """
        Encrypt input_path to output_path for the selected recipient.

        Raises:
            EncryptionError: If no usable key exists or gpg fails
        """
        fingerprint = self.select_recipient()

        try:
            with open(input_path, 'rb') as f:
                result = self.gpg.encrypt_file(
                    f,
                    recipients=[fingerprint],
                    output=output_path,
                    armor=False,
                )
        except (OSError, ValueError) as e:
            self._remove_partial(output_path)
            raise EncryptionError(f"GPG encryption failed: {e}")

        if not result.ok:
            self._remove_partial(output_path)
            raise EncryptionError(f"GPG encryption failed: {result.status}")

    def select_recipient(self) -> str:
        """
        Pick the recipient fingerprint, importing the configured key if needed.

        Returns:
            Fingerprint of the recipient key
        """
        keys = self._list_public_keys()

        if not keys or (self.key_id and self._find_key(keys) is None):
            self.import_public_key()
            keys = self._list_public_keys()

        if not keys:
            raise EncryptionError("No GPG public keys found. Please import a public key.")

        if self.key_id:
            selected = self._find_key(keys)
            if selected is None:
                raise EncryptionError(f"Configured GPG key id not found in keyring: {self.key_id}")
        else:
            keys = sorted(keys, key=lambda k: k['fingerprint'])
            selected = keys[0]
            if len(keys) > 1:
                logger.warning(
                    f"{len(keys)} GPG public keys available and no key_id configured; "
                    f"using {selected['fingerprint']}"
                )

        self._trust(selected['fingerprint'])
        return selected['fingerprint']

    def _find_key(self, keys: List[Dict]) -> Optional[Dict]:
        # Full fingerprint, or a 16/8 hex digit long/short id matching its tail
        for key in keys:
            fingerprint = key['fingerprint'].upper()
            if len(self.key_id) == 40:
                if fingerprint == self.key_id:
                    return key
            elif fingerprint.endswith(self.key_id):
                return key
        return None

    def import_public_key(self) -> List[str]:
        """
        Import the configured armored public key.

        Returns:
            Fingerprints of the imported keys
        """
        if not self.public_key:
            raise EncryptionError("No GPG public key configured")

        try:
            result = self.gpg.import_keys(self.public_key)
        except (OSError, ValueError) as e:
            raise EncryptionError(f"Failed to import GPG public key: {e}")

        fingerprints = [fp for fp in (result.fingerprints or []) if fp]
        if not fingerprints:
            raise EncryptionError("Failed to import GPG public key. Invalid key format.")

        logger.info(f"Imported {len(fingerprints)} GPG public key(s)")
        return fingerprints

    def _list_public_keys(self) -> List[Dict]:
        try:
            return list(self.gpg.list_keys())
        except (OSError, ValueError) as e:
            raise EncryptionError(f"Failed to list GPG keys: {e}")

    def _trust(self, fingerprint: str):
        # Owner trust is granted only to the selected recipient
        try:
            self.gpg.trust_keys([fingerprint], 'TRUST_ULTIMATE')
        except (OSError, ValueError) as e:
            raise EncryptionError(f"Failed to set trust on GPG key {fingerprint}: {e}")


class AES256Encryptor(Encryptor):
    """Passphrase based AES-256-CBC encryption with PBKDF2-SHA256 key derivation."""

    method = 'aes256'
    extension = 'enc'

    def __init__(self, password: str):
        if not password:
            raise EncryptionError("AES-256 encryption requires a password")
        self.password = password

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(self.password.encode())

    def encrypt(self, input_path: str, output_path: str):
        """
        Encrypt input_path into output_path.

        Raises:
            EncryptionError: On any cryptographic or I/O failure
        """
        try:
            salt = os.urandom(SALT_SIZE)
            iv = os.urandom(algorithms.AES.block_size // 8)
            encryptor = Cipher(algorithms.AES(self._derive_key(salt)), modes.CBC(iv)).encryptor()
            padder = padding.PKCS7(algorithms.AES.block_size).padder()

            with open(input_path, 'rb') as src, open(output_path, 'wb') as out:
                out.write(struct.pack('>I', len(salt)))
                out.write(salt)
                out.write(struct.pack('>I', len(iv)))
                out.write(iv)

                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(encryptor.update(padder.update(chunk)))

                out.write(encryptor.update(padder.finalize()))
                out.write(encryptor.finalize())

        except (OSError, ValueError) as e:
            self._remove_partial(output_path)
            raise EncryptionError(f"AES-256 encryption failed: {e}")

    def decrypt(self, input_path: str, output_path: str):
        """
        Decrypt a file produced by encrypt().

        Raises:
            EncryptionError: On malformed header, wrong password or I/O failure
        """
        try:
            with open(input_path, 'rb') as src:
                salt = self._read_field(src, 'salt')
                iv = self._read_field(src, 'IV')

                decryptor = Cipher(algorithms.AES(self._derive_key(salt)), modes.CBC(iv)).decryptor()
                unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()

                with open(output_path, 'wb') as out:
                    while True:
                        chunk = src.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        out.write(unpadder.update(decryptor.update(chunk)))

                    out.write(unpadder.update(decryptor.finalize()))
                    out.write(unpadder.finalize())

        except (OSError, ValueError) as e:
            self._remove_partial(output_path)
            raise EncryptionError(f"AES-256 decryption failed: {e}")

    @staticmethod
    def _read_field(f, name: str) -> bytes:
        header = f.read(4)
        if len(header) != 4:
            raise ValueError(f"truncated {name} length")
        (length,) = struct.unpack('>I', header)
        # salt and IV are small; refuse absurd lengths from corrupted files
        if length == 0 or length > 1024:
            raise ValueError(f"invalid {name} length: {length}")
        value = f.read(length)
        if len(value) != length:
            raise ValueError(f"truncated {name}")
        return value


def create_encryptor(settings) -> Encryptor:
    """
    Build the configured encryption variant.

    Args:
        settings: EncryptionSettings

    Raises:
        EncryptionError: If the method is unknown
    """
    if settings.method == 'gpg':
        return GPGEncryptor(
            public_key=settings.public_key,
            key_id=settings.key_id,
            gnupghome=settings.gnupghome,
        )
    if settings.method == 'aes256':
        return AES256Encryptor(settings.password)

    raise EncryptionError(f"Unsupported encryption method: {settings.method}")
