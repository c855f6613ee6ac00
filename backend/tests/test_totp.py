"""Tests for TOTP secret generation, code derivation and verification."""

import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

from storefront.services.totp import (
    derive_code,
    generate_secret,
    provisioning_uri,
    qr_png_data_url,
    verify_code,
)

# RFC 6238 appendix B seed, base32 encoded
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode("ascii")


class TestSecrets:

    def test_secret_is_base32_of_expected_length(self):
        secret = generate_secret()
        assert len(secret) == 32
        base64.b32decode(secret)

    def test_secrets_are_unique(self):
        assert len({generate_secret() for _ in range(50)}) == 50

    def test_provisioning_uri_names_issuer_and_account(self):
        secret = generate_secret()
        uri = provisioning_uri(secret, "shopper@example.com")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert "shopper%40example.com" in parsed.path or "shopper@example.com" in parsed.path
        params = parse_qs(parsed.query)
        assert params["secret"] == [secret]
        assert params["issuer"] == ["Neaply"]

    def test_qr_code_is_png_data_url(self):
        url = qr_png_data_url("otpauth://totp/x?secret=ABC")
        assert url.startswith("data:image/png;base64,")
        assert base64.b64decode(url.split(",", 1)[1])[:8] == b"\x89PNG\r\n\x1a\n"


class TestDeriveCode:

    def test_rfc6238_vectors(self):
        # SHA1 vectors from RFC 6238, truncated to 6 digits
        assert derive_code(RFC_SECRET, 59) == "287082"
        assert derive_code(RFC_SECRET, 1111111109) == "081804"
        assert derive_code(RFC_SECRET, 1234567890) == "005924"

    def test_same_step_same_code(self):
        secret = generate_secret()
        assert derive_code(secret, 1_700_000_010) == derive_code(secret, 1_700_000_029)

    def test_next_step_changes_code(self):
        # 1111111109 and 1111111111 sit in adjacent steps (RFC 6238 vectors)
        assert derive_code(RFC_SECRET, 1111111109) == "081804"
        assert derive_code(RFC_SECRET, 1111111109 + 30) == "050471"

    def test_accepts_aware_datetime(self):
        moment = datetime.fromtimestamp(1111111109, tz=timezone.utc)
        assert derive_code(RFC_SECRET, moment) == "081804"

    def test_always_six_digits(self):
        secret = generate_secret()
        for ts in range(0, 3000, 30):
            code = derive_code(secret, ts)
            assert len(code) == 6 and code.isdigit()


class TestVerifyCode:

    NOW = 1_700_000_015

    def test_current_step_accepted(self):
        secret = generate_secret()
        assert verify_code(secret, derive_code(secret, self.NOW), now=self.NOW)

    def test_adjacent_steps_accepted_with_window_one(self):
        secret = generate_secret()
        assert verify_code(secret, derive_code(secret, self.NOW - 30), now=self.NOW, window=1)
        assert verify_code(secret, derive_code(secret, self.NOW + 30), now=self.NOW, window=1)

    def test_two_steps_away_rejected_with_window_one(self):
        secret = generate_secret()
        old = derive_code(secret, self.NOW - 60)
        # guard against a coincidental collision with a code inside the window
        inside = {derive_code(secret, self.NOW + d) for d in (-30, 0, 30)}
        if old not in inside:
            assert not verify_code(secret, old, now=self.NOW, window=1)

    def test_window_zero_only_accepts_current_step(self):
        secret = generate_secret()
        previous = derive_code(secret, self.NOW - 30)
        if previous != derive_code(secret, self.NOW):
            assert not verify_code(secret, previous, now=self.NOW, window=0)
        assert verify_code(secret, derive_code(secret, self.NOW), now=self.NOW, window=0)

    def test_wrong_secret_rejected(self):
        code = derive_code(generate_secret(), self.NOW)
        other = generate_secret()
        inside = {derive_code(other, self.NOW + d) for d in (-30, 0, 30)}
        if code not in inside:
            assert not verify_code(other, code, now=self.NOW)

    def test_malformed_codes_rejected(self):
        secret = generate_secret()
        for bad in (None, "", "12345", "1234567", "12a456", "      "):
            assert not verify_code(secret, bad, now=self.NOW)

    def test_surrounding_whitespace_tolerated(self):
        secret = generate_secret()
        assert verify_code(secret, f" {derive_code(secret, self.NOW)} ", now=self.NOW)

    def test_defaults_to_wall_clock(self):
        import time
        secret = generate_secret()
        assert verify_code(secret, derive_code(secret, time.time()))
