from domain_watch.core.domains import email_domain, matches_domain, normalize_domain, normalize_domains


def test_normalize_domain_lowercases_and_strips_wildcards() -> None:
    assert normalize_domain("  Example.COM ") == "example.com"
    assert normalize_domain("*.corp.example.com") == "corp.example.com"
    assert normalize_domain(".example.com.") == "example.com"
    assert normalize_domain("   ") is None
    assert normalize_domain(None) is None


def test_normalize_domains_dedupes_and_keeps_order() -> None:
    assert normalize_domains(["B.com", "a.com", "b.COM", "", 42, "a.com"]) == ["b.com", "a.com"]


def test_email_domain_uses_last_at_sign() -> None:
    assert email_domain("user@a.sub.Example.com") == "a.sub.example.com"
    assert email_domain("odd@name@Example.com") == "example.com"
    assert email_domain("no-at-sign") is None
    assert email_domain("trailing@") is None
    assert email_domain("") is None


def test_matches_domain_requires_dot_boundary() -> None:
    assert matches_domain("example.com", "example.com")
    assert matches_domain("a.sub.example.com", "example.com")
    assert not matches_domain("notexample.com", "example.com")
    assert not matches_domain("example.com.evil.io", "example.com")
