"""Tests for the credential vault."""

import base64

import pytest

from storesync.core.errors import ConfigurationError, FormatError, IntegrityError
from storesync.services.crypto import (
    KEY_LENGTH,
    NONCE_LENGTH,
    TAG_LENGTH,
    TokenVault,
    _parse_key,
    generate_key,
    get_vault,
    main,
)

OTHER_KEY = "f" * 64


class TestKeyParsing:
    def test_hex_key(self):
        assert _parse_key("00" * 32) == bytes(32)

    def test_base64_key(self):
        raw = bytes(range(32))
        assert _parse_key(base64.b64encode(raw).decode()) == raw

    def test_urlsafe_base64_key(self):
        raw = bytes([251] * 32)
        assert _parse_key(base64.urlsafe_b64encode(raw).decode()) == raw

    @pytest.mark.parametrize("key", ["", "   ", "abcd", base64.b64encode(bytes(16)).decode()])
    def test_rejects_missing_or_wrong_size(self, key):
        with pytest.raises(ConfigurationError):
            _parse_key(key)

    def test_generated_keys_parse_in_both_encodings(self):
        keys = generate_key()
        assert _parse_key(keys["hex"]) == _parse_key(keys["base64"])
        assert len(_parse_key(keys["hex"])) == KEY_LENGTH

    def test_constructor_rejects_short_key(self):
        with pytest.raises(ConfigurationError):
            TokenVault(b"short")

    def test_get_vault_prefers_explicit_key(self):
        sealed = TokenVault.from_key_string(OTHER_KEY).encrypt("act.1")
        assert get_vault(OTHER_KEY).decrypt(sealed) == "act.1"
        with pytest.raises(ConfigurationError):
            get_vault("too-short")

    def test_keygen_prints_usable_key(self, capsys):
        main()
        out = capsys.readouterr().out
        line = next(l for l in out.splitlines() if l.startswith("TOKEN_ENC_KEY="))
        assert len(_parse_key(line.split("=", 1)[1])) == KEY_LENGTH


class TestSealing:
    def test_decrypt_returns_plaintext(self, vault):
        assert vault.decrypt(vault.encrypt("act.secret-token")) == "act.secret-token"

    def test_unicode_and_empty_values(self, vault):
        assert vault.decrypt(vault.encrypt("")) == ""
        assert vault.decrypt(vault.encrypt("jeton-é-✓")) == "jeton-é-✓"

    def test_blob_layout_and_fresh_nonce(self, vault):
        a = vault.encrypt("same")
        b = vault.encrypt("same")
        assert a != b
        raw = base64.b64decode(a)
        assert len(raw) == NONCE_LENGTH + TAG_LENGTH + len("same")
        assert raw[:NONCE_LENGTH] != base64.b64decode(b)[:NONCE_LENGTH]

    def test_ciphertext_does_not_contain_plaintext(self, vault):
        blob = vault.encrypt("act.visible")
        assert "act.visible" not in blob
        assert b"act.visible" not in base64.b64decode(blob)


class TestTampering:
    def _flip(self, blob, index):
        raw = bytearray(base64.b64decode(blob))
        raw[index] ^= 0x01
        return base64.b64encode(bytes(raw)).decode()

    @pytest.mark.parametrize("index", [0, NONCE_LENGTH, NONCE_LENGTH + TAG_LENGTH])
    def test_flipped_bit_fails_integrity(self, vault, index):
        blob = vault.encrypt("act.secret")
        with pytest.raises(IntegrityError):
            vault.decrypt(self._flip(blob, index))

    def test_wrong_key_looks_like_tampering(self, vault):
        blob = vault.encrypt("act.secret")
        other = TokenVault.from_key_string(OTHER_KEY)

        with pytest.raises(IntegrityError) as wrong_key:
            other.decrypt(blob)
        with pytest.raises(IntegrityError) as tampered:
            vault.decrypt(self._flip(blob, NONCE_LENGTH + TAG_LENGTH))
        assert str(wrong_key.value) == str(tampered.value)

    def test_not_base64_is_format_error(self, vault):
        with pytest.raises(FormatError):
            vault.decrypt("not base64 at all!")

    def test_too_short_is_format_error(self, vault):
        with pytest.raises(FormatError):
            vault.decrypt(base64.b64encode(b"x" * (NONCE_LENGTH + TAG_LENGTH - 1)).decode())

    def test_vault_errors_share_client_code(self):
        assert IntegrityError().code == FormatError().code == "CREDENTIAL_UNAVAILABLE"


class TestSelfCheck:
    def test_self_check_passes(self, vault):
        assert vault.self_check() is True
