"""
Tests for secret encryption, webhook signatures and widget tokens
"""
import os

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from insurecrm.core.encryption import EncryptionError, VersionedEncryption
from insurecrm.core.webhook_security import (
    InvalidSignatureError, MissingSignatureError, WebhookSignatureValidator, compute_signature,
)
from insurecrm.services.widget_auth import (
    INVALID_TOKEN_MESSAGE, WidgetAuthService, WidgetTokenError, normalize_domain,
)

KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.value = start

    def __call__(self):
        return self.value


class TestVersionedEncryption:
    """AES-256-GCM sealing of tenant secrets"""

    def test_encrypt_decrypt_round_trip(self):
        encryption = VersionedEncryption(KEY_HEX)
        sealed = encryption.encrypt("EAAG-secret-token")

        assert sealed.startswith("enc:v1:")
        assert "EAAG-secret-token" not in sealed
        assert encryption.decrypt(sealed) == "EAAG-secret-token"

    def test_each_encryption_uses_a_fresh_iv(self):
        encryption = VersionedEncryption(KEY_HEX)
        assert encryption.encrypt("same") != encryption.encrypt("same")

    def test_tampered_ciphertext_is_rejected(self):
        encryption = VersionedEncryption(KEY_HEX)
        prefix, version, iv, ciphertext, tag = encryption.encrypt("secret-value").split(":")
        flipped = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]

        with pytest.raises(EncryptionError):
            encryption.decrypt(":".join([prefix, version, iv, flipped, tag]))

    def test_wrong_key_is_rejected(self):
        sealed = VersionedEncryption(KEY_HEX).encrypt("secret-value")
        other = VersionedEncryption("ff" * 32)
        with pytest.raises(EncryptionError):
            other.decrypt(sealed)

    def test_legacy_untagged_layout_is_readable(self):
        """Values sealed before the version tag existed: iv:ciphertext:tag"""
        iv = os.urandom(16)
        sealed = AESGCM(bytes.fromhex(KEY_HEX)).encrypt(iv, b"legacy-token", None)
        legacy = f"{iv.hex()}:{sealed[:-16].hex()}:{sealed[-16:].hex()}"

        encryption = VersionedEncryption(KEY_HEX)
        assert VersionedEncryption.is_encrypted(legacy)
        assert encryption.decrypt(legacy) == "legacy-token"

    def test_plaintext_passes_through_decrypt_if_encrypted(self):
        encryption = VersionedEncryption(KEY_HEX)
        assert VersionedEncryption.is_encrypted("plain-token") is False
        assert encryption.decrypt_if_encrypted("plain-token") == "plain-token"
        assert encryption.decrypt_if_encrypted(None) is None

    def test_plaintext_is_not_decryptable(self):
        with pytest.raises(EncryptionError):
            VersionedEncryption(KEY_HEX).decrypt("definitely:not:encrypted")

    @pytest.mark.parametrize("key", [None, "", "not-hex", "abcd"])
    def test_invalid_keys_are_rejected(self, key):
        with pytest.raises(EncryptionError):
            VersionedEncryption(key)


class TestWebhookSignatureValidator:
    """Meta x-hub-signature-256 verification"""

    def setup_method(self):
        self.validator = WebhookSignatureValidator()
        self.body = b'{"entry": []}'

    def test_valid_signature(self):
        signature = compute_signature(self.body, "app-secret")
        assert self.validator.verify_signature(self.body, signature, "app-secret") is True

    def test_signature_with_other_secret_fails(self):
        signature = compute_signature(self.body, "other-secret")
        with pytest.raises(InvalidSignatureError):
            self.validator.verify_signature(self.body, signature, "app-secret")

    def test_modified_body_fails(self):
        signature = compute_signature(self.body, "app-secret")
        with pytest.raises(InvalidSignatureError):
            self.validator.verify_signature(b'{"entry": [1]}', signature, "app-secret")

    def test_missing_signature_or_secret(self):
        with pytest.raises(MissingSignatureError):
            self.validator.verify_signature(self.body, None, "app-secret")
        with pytest.raises(MissingSignatureError):
            self.validator.verify_signature(self.body, compute_signature(self.body, "x"), None)

    def test_wrong_prefix(self):
        with pytest.raises(InvalidSignatureError):
            self.validator.verify_signature(self.body, "sha1=abcdef", "app-secret")

    def test_subscription_handshake(self):
        assert self.validator.verify_subscription("subscribe", "token", "token") is True
        assert self.validator.verify_subscription("subscribe", "wrong", "token") is False
        assert self.validator.verify_subscription("unsubscribe", "token", "token") is False
        assert self.validator.verify_subscription("subscribe", None, "token") is False


class TestWidgetAuthService:
    """Signed, expiring, domain-bound widget tokens"""

    def setup_method(self):
        self.clock = FakeClock()
        self.service = WidgetAuthService(secret="widget-secret", default_ttl=3600, clock=self.clock)

    def test_valid_token_identifies_tenant(self):
        token = self.service.issue_token("tenant-1", "widget_abc", domain="https://www.example.com/")
        identity = self.service.verify_token(token, "example.com")

        assert identity.tenant_id == "tenant-1"
        assert identity.widget_id == "widget_abc"
        assert identity.domain == "example.com"

    def test_token_without_domain_accepts_any_origin(self):
        token = self.service.issue_token("tenant-1", "widget_abc")
        assert self.service.verify_token(token, "anything.test").tenant_id == "tenant-1"

    def test_expired_token(self):
        token = self.service.issue_token("tenant-1", "widget_abc", ttl_seconds=60)
        self.clock.value += 61
        with pytest.raises(WidgetTokenError):
            self.service.verify_token(token)

    def test_domain_mismatch(self):
        token = self.service.issue_token("tenant-1", "widget_abc", domain="example.com")
        with pytest.raises(WidgetTokenError):
            self.service.verify_token(token, "https://evil.test")

    def test_token_signed_with_other_secret(self):
        other = WidgetAuthService(secret="other-secret", default_ttl=3600, clock=self.clock)
        token = other.issue_token("tenant-1", "widget_abc")
        with pytest.raises(WidgetTokenError):
            self.service.verify_token(token)

    def test_tampered_payload(self):
        token = self.service.issue_token("tenant-1", "widget_abc")
        forged = self.service.issue_token("tenant-2", "widget_abc").split(".")[0] + "." + token.split(".")[1]
        with pytest.raises(WidgetTokenError):
            self.service.verify_token(forged)

    @pytest.mark.parametrize("token", [None, "", "no-dot", "a.b.c"])
    def test_malformed_tokens(self, token):
        with pytest.raises(WidgetTokenError):
            self.service.verify_token(token)

    def test_failures_share_one_message(self):
        """Callers cannot tell which check rejected the token"""
        expired = self.service.issue_token("tenant-1", "w", ttl_seconds=1)
        bound = self.service.issue_token("tenant-1", "w", domain="example.com")
        self.clock.value += 5

        messages = set()
        for token, domain in [(expired, None), (bound, "other.test"), ("garbage", None)]:
            with pytest.raises(WidgetTokenError) as exc_info:
                self.service.verify_token(token, domain)
            messages.add(str(exc_info.value))
        assert messages == {INVALID_TOKEN_MESSAGE}

    def test_widget_config(self):
        config = self.service.generate_widget_config("tenant-1", domain="example.com")

        assert config["widget_id"].startswith("widget_")
        assert config["api_url"].endswith("/api/v1/widget")
        assert self.service.verify_token(config["token"], "example.com").tenant_id == "tenant-1"

    def test_normalize_domain(self):
        assert normalize_domain("HTTPS://WWW.Example.com/") == "example.com"
        assert normalize_domain("http://shop.example.com") == "shop.example.com"
        assert normalize_domain(None) is None

    def test_normalize_domain_drops_path_and_port(self):
        assert normalize_domain("https://www.example.com/quotes/home?ref=nav") == "example.com"
        assert normalize_domain("http://example.com:8080") == "example.com"
        assert normalize_domain("example.com/landing") == "example.com"
        assert normalize_domain("   ") is None

    def test_referer_url_verifies_against_bound_domain(self):
        token = self.service.issue_token("tenant-1", "w", domain="example.com")
        identity = self.service.verify_token(token, "https://example.com/contact-us")
        assert identity.tenant_id == "tenant-1"
