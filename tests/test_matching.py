from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from domain_watch.services.matching import find_matches, match_entries
from domain_watch.services.records import CredentialRow, MatchMode, MatchType, WatchlistEntry

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _entry(entry_id: int, domains: list[str], mode: MatchMode) -> WatchlistEntry:
    return WatchlistEntry(id=entry_id, name=f"entry-{entry_id}", domains=domains, match_mode=mode)


def _row(login: str = "", url: str = "", domain: str | None = None) -> CredentialRow:
    return CredentialRow(url=url, login=login, password="pw", browser="Firefox", domain=domain)


def test_credential_mode_matches_email_subdomain_only_for_watched_domain() -> None:
    rows = [_row(login="user@a.sub.example.com", url="https://portal.test/login")]
    matches = match_entries(
        [_entry(1, ["example.com"], MatchMode.CREDENTIAL), _entry(2, ["other.com"], MatchMode.CREDENTIAL)],
        login_rows=rows,
        domain_rows=[],
        now=NOW,
    )

    assert set(matches) == {1}
    assert len(matches[1].credential_matches) == 1
    assert matches[1].url_matches == []
    assert matches[1].matched_domains == ["example.com"]
    assert matches[1].match_type is MatchType.CREDENTIAL_EMAIL


def test_exact_and_subdomain_match_but_not_bare_suffix() -> None:
    login_rows = [
        _row(login="a@example.com", url="https://a"),
        _row(login="b@mail.example.com", url="https://b"),
        _row(login="c@notexample.com", url="https://c"),
    ]
    domain_rows = [
        _row(url="https://notexample.com/x", domain="notexample.com"),
        _row(url="https://shop.example.com/", domain="Shop.Example.com"),
    ]
    matches = match_entries(
        [_entry(1, ["example.com"], MatchMode.BOTH)],
        login_rows=login_rows,
        domain_rows=domain_rows,
        now=NOW,
    )

    assert [item.login for item in matches[1].credential_matches] == ["a@example.com", "b@mail.example.com"]
    assert [item.url for item in matches[1].url_matches] == ["https://shop.example.com/"]


def test_url_match_already_seen_as_credential_is_not_counted_twice() -> None:
    shared = dict(login="a@bad.example.com", url="https://bad.example.com/login")
    login_rows = [_row(**shared), _row(login="x@other.com", url="https://other.com")]
    domain_rows = [
        _row(**shared, domain="bad.example.com"),
        _row(login="z@gmail.com", url="https://bad.example.com/admin", domain="bad.example.com"),
    ]
    matches = match_entries(
        [_entry(1, ["example.com"], MatchMode.BOTH)],
        login_rows=login_rows,
        domain_rows=domain_rows,
        now=NOW,
    )

    combined = matches[1].credential_matches + matches[1].url_matches
    assert len(combined) == len({(item.url, item.login) for item in combined}) == 2
    assert [item.login for item in matches[1].url_matches] == ["z@gmail.com"]
    assert matches[1].match_type is MatchType.BOTH


def test_credential_mode_ignores_url_hits() -> None:
    matches = match_entries(
        [_entry(1, ["example.com"], MatchMode.CREDENTIAL)],
        login_rows=[_row(login="nobody@gmail.com", url="https://example.com")],
        domain_rows=[_row(login="nobody@gmail.com", url="https://example.com", domain="example.com")],
        now=NOW,
    )

    assert matches == {}


def test_url_mode_keeps_hits_that_another_entry_matched_by_email() -> None:
    row = dict(login="ops@example.com", url="https://example.com/login")
    matches = match_entries(
        [_entry(1, ["example.com"], MatchMode.CREDENTIAL), _entry(2, ["example.com"], MatchMode.URL)],
        login_rows=[_row(**row)],
        domain_rows=[_row(**row, domain="example.com")],
        now=NOW,
    )

    assert len(matches[1].credential_matches) == 1
    assert matches[2].credential_matches == []
    assert len(matches[2].url_matches) == 1
    assert matches[2].match_type is MatchType.URL


def test_logins_without_at_sign_never_match_and_case_is_normalized() -> None:
    matches = match_entries(
        [_entry(1, ["example.com"], MatchMode.CREDENTIAL)],
        login_rows=[_row(login="example.com", url="https://a"), _row(login="Boss@EXAMPLE.COM", url="https://b")],
        domain_rows=[],
        now=NOW,
    )

    assert [item.login for item in matches[1].credential_matches] == ["Boss@EXAMPLE.COM"]


def test_overlapping_watched_domains_do_not_duplicate_items() -> None:
    matches = match_entries(
        [_entry(1, ["example.com", "corp.example.com", "unused.org"], MatchMode.CREDENTIAL)],
        login_rows=[_row(login="dev@corp.example.com", url="https://vpn")],
        domain_rows=[],
        now=NOW,
    )

    assert len(matches[1].credential_matches) == 1
    assert matches[1].matched_domains == ["example.com", "corp.example.com"]


def test_found_at_falls_back_to_now_and_is_utc_iso() -> None:
    stamped = CredentialRow(
        url="https://a",
        login="a@example.com",
        password="pw",
        browser="Edge",
        created_at=datetime(2026, 3, 4, 5, 6, 7),
    )
    matches = match_entries(
        [_entry(1, ["example.com"], MatchMode.CREDENTIAL)],
        login_rows=[stamped, _row(login="b@example.com", url="https://b")],
        domain_rows=[],
        now=NOW,
    )

    found = [item.found_at for item in matches[1].credential_matches]
    assert found == ["2026-03-04T05:06:07.000Z", "2026-10-01T12:00:00.000Z"]


class CountingCorpus:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def fetch_login_rows(self, device_id: str) -> list[CredentialRow]:
        self.calls.append("login")
        return [_row(login="a@example.com", url="https://a")]

    async def fetch_domain_rows(self, device_id: str) -> list[CredentialRow]:
        self.calls.append("domain")
        return [_row(url="https://b", domain="b.example.com")]


def test_find_matches_issues_at_most_two_reads_regardless_of_watchlist_size() -> None:
    corpus = CountingCorpus()
    entries = [_entry(index, [f"d{index}.com", "example.com"], MatchMode.BOTH) for index in range(1, 50)]

    matches = asyncio.run(find_matches(corpus, "device-1", entries, now=NOW))

    assert corpus.calls == ["login", "domain"]
    assert len(matches) == 49


def test_find_matches_skips_reads_no_entry_needs() -> None:
    corpus = CountingCorpus()

    matches = asyncio.run(
        find_matches(corpus, "device-1", [_entry(1, ["example.com"], MatchMode.CREDENTIAL)], now=NOW)
    )

    assert corpus.calls == ["login"]
    assert list(matches) == [1]
