from __future__ import annotations

import json
from datetime import date

from app.services.opportunities.errors import ProviderUnavailable
from app.services.opportunities.repositories import InMemoryOpportunityRepository
from pipelines import opportunity_search
from tests.helpers.search_stub import StubSearchProvider, make_hit


class CliProvider(StubSearchProvider):
    def __init__(self, hits=None, *, error=None, reachable=True) -> None:
        super().__init__(hits, error=error)
        self.reachable = reachable
        self.closed = False

    def ping(self) -> bool:
        return self.reachable

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.closed = True


def _patch(monkeypatch, provider, repository=None):
    store = repository or InMemoryOpportunityRepository()
    monkeypatch.setattr(opportunity_search, "build_provider", lambda: provider)
    monkeypatch.setattr(opportunity_search, "build_opportunity_repository", lambda url=None: store)
    return store


def test_cli_prints_summary_and_forwards_filters(monkeypatch, capsys):
    provider = CliProvider([make_hit("https://scholarships.com/a")])
    store = _patch(monkeypatch, provider)

    exit_code = opportunity_search.main(
        [
            "women in engineering",
            "--type",
            "scholarship",
            "--country",
            "Kenya",
            "--amount-min",
            "500",
            "--deadline-after",
            "2026-01-01",
            "--tag",
            "women",
            "--tag",
            "stem",
        ]
    )

    assert exit_code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["totalFound"] == 1
    assert summary["newOpportunities"] == 1
    query, filters = provider.calls[0]
    assert query == "women in engineering"
    assert filters.type == "scholarship"
    assert filters.amount_min == 500
    assert filters.deadline_after == date(2026, 1, 1)
    assert filters.tags == ["women", "stem"]
    assert store.find_by_url("https://scholarships.com/a").country == "Kenya"
    assert provider.closed is True


def test_cli_exits_non_zero_on_provider_failure(monkeypatch, capsys):
    _patch(monkeypatch, CliProvider(error=ProviderUnavailable("Exa search failed: 500")))

    assert opportunity_search.main(["scholarships"]) == 1
    assert capsys.readouterr().out == ""


def test_cli_exits_non_zero_without_api_key(monkeypatch):
    def missing_key():
        raise ValueError("EXA_API_KEY is required to search for opportunities.")

    monkeypatch.setattr(opportunity_search, "build_provider", missing_key)
    assert opportunity_search.main(["scholarships"]) == 1


def test_cli_rejects_short_query(monkeypatch):
    _patch(monkeypatch, CliProvider())
    assert opportunity_search.main(["ab"]) == 1


def test_cli_check_reports_reachability(monkeypatch, capsys):
    _patch(monkeypatch, CliProvider(reachable=False))

    assert opportunity_search.main(["--check"]) == 1
    assert json.loads(capsys.readouterr().out) == {"provider": "exa", "reachable": False}
