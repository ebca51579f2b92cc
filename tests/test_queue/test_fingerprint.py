"""
Tests for filing fingerprints.
"""

import hashlib

import pytest

from lienflow.core.fingerprint import fingerprint


class TestFingerprint:
    """Tests for the fingerprint function."""

    @pytest.mark.unit
    def test_sha256_of_joined_identity(self) -> None:
        expected = hashlib.sha256(b"ca_sos-U260005937931-01/20/2026").hexdigest()
        assert fingerprint("ca_sos", "U260005937931", "01/20/2026") == expected

    @pytest.mark.unit
    def test_deterministic(self) -> None:
        first = fingerprint("ca_sos", "U260005937931", "01/20/2026")
        second = fingerprint("ca_sos", "U260005937931", "01/20/2026")
        assert first == second
        assert len(first) == 64

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "other",
        [
            ("tx_sos", "U260005937931", "01/20/2026"),
            ("ca_sos", "U260005937932", "01/20/2026"),
            ("ca_sos", "U260005937931", "01/21/2026"),
        ],
    )
    def test_every_component_matters(self, other: tuple[str, str, str]) -> None:
        assert fingerprint(*other) != fingerprint("ca_sos", "U260005937931", "01/20/2026")
