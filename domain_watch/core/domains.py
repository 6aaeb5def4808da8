from collections.abc import Iterable


def normalize_domain(raw: str | None) -> str | None:
    """Lower-case a domain and strip surrounding whitespace, wildcard and dots."""
    if not isinstance(raw, str):
        return None
    domain = raw.strip().lower()
    if domain.startswith("*."):
        domain = domain[2:]
    domain = domain.strip(".")
    return domain or None


def normalize_domains(raw_domains: Iterable[object]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in raw_domains:
        domain = normalize_domain(raw) if isinstance(raw, str) else None
        if domain is None or domain in seen:
            continue
        seen.add(domain)
        normalized.append(domain)
    return normalized


def email_domain(login: str | None) -> str | None:
    """Return the part after the last ``@`` of a login, or None when it has none."""
    if not login:
        return None
    _, separator, domain = login.strip().lower().rpartition("@")
    if not separator:
        return None
    return domain.strip() or None


def matches_domain(candidate: str, watched: str) -> bool:
    # Dot boundary: "notexample.com" must not match "example.com".
    return candidate == watched or candidate.endswith("." + watched)
