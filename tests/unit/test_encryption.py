"""
Unit tests for backup encryption (doksnap/backup/encryption.py).

Tests AES-256 file encryption and GPG recipient selection.
"""

import os
import struct
from unittest.mock import MagicMock

import pytest

from doksnap.config import EncryptionSettings
from doksnap.backup.encryption import (
    AES256Encryptor,
    GPGEncryptor,
    EncryptionError,
    create_encryptor,
    normalize_key_id,
    SALT_SIZE,
)


@pytest.fixture
def plaintext(tmp_path):
    path = tmp_path / 'archive.tar.gz'
    # Not a multiple of the chunk or block size
    path.write_bytes(os.urandom(10000) + b'tail')
    return path


class TestAES256Encryptor:

    def test_round_trip(self, aes_encryptor, plaintext, tmp_path):
        encrypted = tmp_path / 'archive.tar.gz.enc'
        decrypted = tmp_path / 'restored.tar.gz'

        aes_encryptor.encrypt(str(plaintext), str(encrypted))
        aes_encryptor.decrypt(str(encrypted), str(decrypted))

        assert decrypted.read_bytes() == plaintext.read_bytes()

    def test_header_layout(self, aes_encryptor, plaintext, tmp_path):
        encrypted = tmp_path / 'archive.tar.gz.enc'

        aes_encryptor.encrypt(str(plaintext), str(encrypted))

        data = encrypted.read_bytes()
        (salt_len,) = struct.unpack('>I', data[:4])
        (iv_len,) = struct.unpack('>I', data[4 + salt_len:8 + salt_len])
        assert salt_len == SALT_SIZE
        assert iv_len == 16

        # PKCS7 always adds a padding block or partial block
        ciphertext = data[8 + salt_len + iv_len:]
        assert len(ciphertext) % 16 == 0
        assert len(ciphertext) > plaintext.stat().st_size

    def test_same_input_encrypts_differently(self, aes_encryptor, plaintext, tmp_path):
        first = tmp_path / 'first.enc'
        second = tmp_path / 'second.enc'

        aes_encryptor.encrypt(str(plaintext), str(first))
        aes_encryptor.encrypt(str(plaintext), str(second))

        assert first.read_bytes() != second.read_bytes()

    def test_empty_input(self, aes_encryptor, tmp_path):
        empty = tmp_path / 'empty'
        empty.write_bytes(b'')
        encrypted = tmp_path / 'empty.enc'
        decrypted = tmp_path / 'empty.out'

        aes_encryptor.encrypt(str(empty), str(encrypted))
        aes_encryptor.decrypt(str(encrypted), str(decrypted))

        assert decrypted.read_bytes() == b''

    def test_wrong_password_fails(self, aes_encryptor, plaintext, tmp_path):
        encrypted = tmp_path / 'archive.tar.gz.enc'
        aes_encryptor.encrypt(str(plaintext), str(encrypted))

        # Wrong key yields invalid padding in the vast majority of cases;
        # when it does not, the output differs from the plaintext
        output = tmp_path / 'out'
        try:
            AES256Encryptor('wrong_password').decrypt(str(encrypted), str(output))
        except EncryptionError:
            assert not output.exists()
        else:
            assert output.read_bytes() != plaintext.read_bytes()

    def test_corrupt_header(self, aes_encryptor, tmp_path):
        corrupt = tmp_path / 'corrupt.enc'
        corrupt.write_bytes(struct.pack('>I', 1 << 20) + b'x' * 32)

        with pytest.raises(EncryptionError, match='invalid salt length'):
            aes_encryptor.decrypt(str(corrupt), str(tmp_path / 'out'))

    def test_missing_input_removes_partial_output(self, aes_encryptor, tmp_path):
        output = tmp_path / 'out.enc'

        with pytest.raises(EncryptionError):
            aes_encryptor.encrypt(str(tmp_path / 'missing'), str(output))

        assert not output.exists()

    def test_password_required(self):
        with pytest.raises(EncryptionError):
            AES256Encryptor('')


def _gpg_key(fingerprint):
    return {'fingerprint': fingerprint, 'keyid': fingerprint[-16:]}


class TestGPGEncryptor:

    @pytest.fixture
    def gpg(self):
        gpg = MagicMock()
        gpg.list_keys.return_value = [_gpg_key('B' * 40)]
        gpg.trust_keys.return_value = MagicMock(status='ok')
        gpg.encrypt_file.return_value = MagicMock(ok=True, status='encryption ok')
        return gpg

    def test_encrypt_uses_selected_recipient(self, gpg, plaintext, tmp_path):
        encryptor = GPGEncryptor('PUBLIC KEY', gpg=gpg)
        output = tmp_path / 'archive.tar.gz.gpg'

        encryptor.encrypt(str(plaintext), str(output))

        kwargs = gpg.encrypt_file.call_args[1]
        assert kwargs['recipients'] == ['B' * 40]
        assert kwargs['output'] == str(output)
        assert kwargs['armor'] is False
        gpg.trust_keys.assert_called_once_with(['B' * 40], 'TRUST_ULTIMATE')

    def test_imports_key_when_keyring_empty(self, gpg):
        gpg.list_keys.side_effect = [[], [_gpg_key('C' * 40)]]
        gpg.import_keys.return_value = MagicMock(fingerprints=['C' * 40])

        encryptor = GPGEncryptor('PUBLIC KEY', gpg=gpg)

        assert encryptor.select_recipient() == 'C' * 40
        gpg.import_keys.assert_called_once_with('PUBLIC KEY')

    def test_invalid_public_key(self, gpg):
        gpg.list_keys.return_value = []
        gpg.import_keys.return_value = MagicMock(fingerprints=[])

        with pytest.raises(EncryptionError, match='Invalid key format'):
            GPGEncryptor('garbage', gpg=gpg).select_recipient()

    def test_multiple_keys_pick_lowest_fingerprint(self, gpg, caplog):
        gpg.list_keys.return_value = [_gpg_key('F' * 40), _gpg_key('A' * 40), _gpg_key('D' * 40)]

        selected = GPGEncryptor('PUBLIC KEY', gpg=gpg).select_recipient()

        assert selected == 'A' * 40
        assert '3 GPG public keys available' in caplog.text
        # Only the selected key is trusted
        gpg.trust_keys.assert_called_once_with(['A' * 40], 'TRUST_ULTIMATE')

    def test_key_id_selects_matching_key(self, gpg):
        wanted = '0123456789ABCDEF0123456789ABCDEF01234567'
        gpg.list_keys.return_value = [_gpg_key('A' * 40), _gpg_key(wanted)]

        selected = GPGEncryptor('PUBLIC KEY', key_id='89abcdef01234567', gpg=gpg).select_recipient()

        assert selected == wanted

    def test_unknown_key_id(self, gpg):
        gpg.import_keys.return_value = MagicMock(fingerprints=['C' * 40])

        with pytest.raises(EncryptionError, match='key id not found'):
            GPGEncryptor('PUBLIC KEY', key_id='DEADBEEF', gpg=gpg).select_recipient()

    def test_imports_key_when_key_id_absent_from_keyring(self, gpg):
        wanted = '0123456789ABCDEF0123456789ABCDEF01234567'
        gpg.list_keys.side_effect = [[_gpg_key('A' * 40)], [_gpg_key('A' * 40), _gpg_key(wanted)]]
        gpg.import_keys.return_value = MagicMock(fingerprints=[wanted])

        selected = GPGEncryptor('PUBLIC KEY', key_id=wanted, gpg=gpg).select_recipient()

        assert selected == wanted
        gpg.import_keys.assert_called_once_with('PUBLIC KEY')
        gpg.trust_keys.assert_called_once_with([wanted], 'TRUST_ULTIMATE')

    def test_present_key_id_skips_import(self, gpg):
        GPGEncryptor('PUBLIC KEY', key_id='B' * 16, gpg=gpg).select_recipient()

        gpg.import_keys.assert_not_called()

    def test_full_fingerprint_must_match_exactly(self, gpg):
        gpg.list_keys.return_value = [_gpg_key('AB' * 20)]
        gpg.import_keys.return_value = MagicMock(fingerprints=['C' * 40])

        with pytest.raises(EncryptionError, match='key id not found'):
            GPGEncryptor('PUBLIC KEY', key_id='0X' + 'BA' * 20, gpg=gpg).select_recipient()

    @pytest.mark.parametrize('key_id', ['B', 'BBBB', 'B' * 12, 'B' * 39, 'ZZZZZZZZ'])
    def test_rejects_malformed_key_id(self, key_id):
        with pytest.raises(EncryptionError, match='40 digit fingerprint'):
            GPGEncryptor('PUBLIC KEY', key_id=key_id)

    def test_key_id_is_normalized(self):
        assert normalize_key_id('0xdead beef') == 'DEADBEEF'

    def test_trust_failure_raises_encryption_error(self, gpg):
        gpg.trust_keys.side_effect = ValueError('gpg returned an error - return code 2')

        with pytest.raises(EncryptionError, match='Failed to set trust'):
            GPGEncryptor('PUBLIC KEY', gpg=gpg).select_recipient()

    def test_import_failure_raises_encryption_error(self, gpg):
        gpg.list_keys.return_value = []
        gpg.import_keys.side_effect = OSError('gpg binary vanished')

        with pytest.raises(EncryptionError, match='Failed to import GPG public key'):
            GPGEncryptor('PUBLIC KEY', gpg=gpg).select_recipient()

    def test_failed_encryption_removes_output(self, gpg, plaintext, tmp_path):
        output = tmp_path / 'archive.tar.gz.gpg'

        def fail(f, recipients, output, armor):
            with open(output, 'wb') as out:
                out.write(b'partial')
            return MagicMock(ok=False, status='invalid recipient')

        gpg.encrypt_file.side_effect = fail

        with pytest.raises(EncryptionError, match='invalid recipient'):
            GPGEncryptor('PUBLIC KEY', gpg=gpg).encrypt(str(plaintext), str(output))

        assert not output.exists()


class TestCreateEncryptor:

    def test_aes(self):
        encryptor = create_encryptor(EncryptionSettings(method='aes256', password='pw'))

        assert isinstance(encryptor, AES256Encryptor)
        assert encryptor.extension == 'enc'

    def test_gpg(self):
        encryptor = create_encryptor(EncryptionSettings(method='gpg', public_key='KEY', key_id='abcd1234'))

        assert isinstance(encryptor, GPGEncryptor)
        assert encryptor.extension == 'gpg'
        assert encryptor.key_id == 'ABCD1234'

    def test_unknown(self):
        with pytest.raises(EncryptionError):
            create_encryptor(EncryptionSettings(method='rot13'))
