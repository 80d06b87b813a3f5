"""Tests for the certbot provider."""
from __future__ import annotations

import pytest
from conftest import FakeRunner

from deployctl.providers.certbot import CertbotError, CertbotProvider

CERTIFICATES_OUTPUT = """\
Found the following certs:
  Certificate Name: shop.example.com
    Domains: shop.example.com www.shop.example.com
    Expiry Date: 2024-06-01 10:00:00+00:00 (VALID: 80 days)
  Certificate Name: api.example.com
    Domains: api.example.com
"""


def test_certificate_domains_parses_listing() -> None:
    """Every ``Domains:`` line contributes names."""
    runner = FakeRunner()
    runner.respond("certbot", "certificates", stdout=CERTIFICATES_OUTPUT)
    provider = CertbotProvider(runner)

    assert provider.certificate_domains() == {
        "shop.example.com",
        "www.shop.example.com",
        "api.example.com",
    }
    assert provider.has_certificate("api.example.com") is True
    assert provider.has_certificate("blog.example.com") is False


def test_ensure_certificate_skips_existing() -> None:
    """An already-covered primary domain is not re-issued."""
    runner = FakeRunner()
    runner.respond("certbot", "certificates", stdout=CERTIFICATES_OUTPUT)
    provider = CertbotProvider(runner)

    result = provider.ensure_certificate(["shop.example.com"], "ops@example.com")

    assert result.skipped is True
    assert result.issued is False
    assert runner.commands() == [["certbot", "certificates"]]


def test_ensure_certificate_requests_all_names() -> None:
    """Missing certificates are requested through the nginx plugin."""
    runner = FakeRunner()
    provider = CertbotProvider(runner, certbot_bin="certbot")

    result = provider.ensure_certificate(
        ["blog.example.com", "www.blog.example.com"], "ops@example.com"
    )

    assert result.issued is True
    assert runner.commands()[-1] == [
        "certbot",
        "--nginx",
        "-d",
        "blog.example.com",
        "-d",
        "www.blog.example.com",
        "--non-interactive",
        "--agree-tos",
        "-m",
        "ops@example.com",
        "--redirect",
    ]


def test_ensure_certificate_failure_raises() -> None:
    """A failed issuance raises :class:`CertbotError`."""
    runner = FakeRunner()
    runner.fail("certbot", "--nginx", stderr="DNS problem")
    provider = CertbotProvider(runner)

    with pytest.raises(CertbotError, match="DNS problem"):
        provider.ensure_certificate(["blog.example.com"], "ops@example.com")


def test_ensure_certificate_requires_domains() -> None:
    """An empty domain list is rejected."""
    with pytest.raises(CertbotError):
        CertbotProvider(FakeRunner()).ensure_certificate([], "ops@example.com")
