"""Tests for the search engine."""

from datetime import datetime

import pytest

from smartscan.config import SearchConfig
from smartscan.exceptions import ValidationError
from smartscan.search import (
    Pagination,
    SearchEngine,
    SearchQuery,
    SearchType,
    highlight,
)


@pytest.fixture
def searcher(session_factory) -> SearchEngine:
    return SearchEngine(session_factory, SearchConfig())


def _titles(response) -> list[str]:
    return [hit.title for hit in response.results]


class TestHighlight:
    """Tests for snippet extraction."""

    def test_window_on_both_sides(self) -> None:
        text = "x" * 100 + "invoice" + "y" * 100
        assert highlight(text, "invoice") == "x" * 50 + "invoice" + "y" * 50

    def test_clipped_at_boundaries(self) -> None:
        text = "...this invoice number 42..."
        assert highlight(text, "invoice") == text

    def test_case_insensitive_keeps_original_text(self) -> None:
        assert highlight("Total INVOICE amount", "invoice") == "Total INVOICE amount"

    def test_first_occurrence(self) -> None:
        text = "a" * 60 + "key" + "b" * 60 + "key"
        assert highlight(text, "key", window=10) == "a" * 10 + "key" + "b" * 10

    def test_no_match(self) -> None:
        assert highlight("nothing here", "invoice") is None
        assert highlight("", "invoice") is None
        assert highlight("text", "") is None


class TestPagination:
    def test_pages_rounded_up(self) -> None:
        assert Pagination.build(page=1, limit=20, total=41).pages == 3
        assert Pagination.build(page=1, limit=20, total=0).pages == 0
        assert Pagination.build(page=2, limit=10, total=10).pages == 1


class TestScope:
    """Non-elevated actors only ever see their own documents."""

    @pytest.fixture
    def corpus(self, make_document, alice, bob):
        make_document(alice, "alice invoice 100 USD", title="Alice invoice", category="finance")
        make_document(bob, "bob invoice 200 USD", title="Bob invoice", category="finance")

    def test_user_sees_own_only(self, searcher, corpus, alice) -> None:
        response = searcher.search(alice, SearchQuery(q="invoice"))
        assert _titles(response) == ["Alice invoice"]
        assert response.pagination.total == 1
        assert all(hit.owner_id == alice.id for hit in response.results)

    @pytest.mark.parametrize("query", [
        SearchQuery(q="bob"),
        SearchQuery(category="finance"),
        SearchQuery(has_amount=True),
        SearchQuery(q="invoice", type="content", has_amount=True, category="finance"),
        SearchQuery(date_from="2000-01-01"),
    ])
    def test_no_filter_combination_escapes_scope(self, searcher, corpus, alice, query) -> None:
        response = searcher.search(alice, query)
        assert all(hit.owner_id == alice.id for hit in response.results)

    def test_manager_and_admin_see_all(self, searcher, corpus, manager, admin) -> None:
        assert sorted(_titles(searcher.search(manager, SearchQuery(q="invoice")))) == ["Alice invoice", "Bob invoice"]
        assert searcher.search(admin, SearchQuery(q="invoice")).pagination.total == 2

    def test_guest_sees_nothing(self, searcher, corpus, guest) -> None:
        response = searcher.search(guest, SearchQuery(q="invoice"))
        assert response.results == []
        assert response.pagination.total == 0


class TestTextQuery:
    """Tests for q and type."""

    @pytest.fixture
    def corpus(self, make_document, admin):
        make_document(admin, "nothing special", title="Quarterly report", description="budget summary",
                      created_at=datetime(2024, 1, 1))
        make_document(admin, "page one", "the budget was exceeded by far", title="Minutes",
                      created_at=datetime(2024, 1, 2))
        make_document(admin, "irrelevant", title="Receipts", tags=["Budget", "2024"],
                      created_at=datetime(2024, 1, 3))

    def test_all_matches_every_field(self, searcher, corpus, admin) -> None:
        response = searcher.search(admin, SearchQuery(q="BUDGET"))
        assert _titles(response) == ["Receipts", "Minutes", "Quarterly report"]

    def test_document_type_skips_page_text(self, searcher, corpus, admin) -> None:
        response = searcher.search(admin, SearchQuery(q="budget", type="document"))
        assert _titles(response) == ["Receipts", "Quarterly report"]

    def test_content_type_only_page_text(self, searcher, corpus, admin) -> None:
        response = searcher.search(admin, SearchQuery(q="budget", type=SearchType.CONTENT))
        assert _titles(response) == ["Minutes"]

    def test_highlight_reports_page_order(self, searcher, corpus, admin) -> None:
        hit = searcher.search(admin, SearchQuery(q="budget", type="content")).results[0]
        assert hit.total_pages == 2
        assert len(hit.matched_pages) == 1
        match = hit.matched_pages[0]
        assert match.page_order == 2
        assert match.highlights == ["the budget was exceeded by far"]

    def test_document_type_has_no_highlights(self, searcher, corpus, admin) -> None:
        response = searcher.search(admin, SearchQuery(q="budget", type="document"))
        assert all(hit.matched_pages == [] for hit in response.results)

    def test_like_wildcards_are_literal(self, searcher, make_document, admin) -> None:
        make_document(admin, "growth of 50% this year", title="Growth")
        make_document(admin, "growth of 50 units", title="Units")
        assert _titles(searcher.search(admin, SearchQuery(q="50%"))) == ["Growth"]

    def test_cyrillic_case_insensitive(self, searcher, make_document, alice) -> None:
        make_document(alice, "Счёт на оплату", title="Счёт")

        assert searcher.search(alice, SearchQuery(q="счёт")).pagination.total == 1
        hit = searcher.search(alice, SearchQuery(q="ОПЛАТУ", type="content")).results[0]
        assert hit.matched_pages[0].highlights == ["Счёт на оплату"]
        assert ("document", "Счёт") in [(s.type, s.value) for s in searcher.suggestions(alice, "сч")]

    def test_tags_matched_one_by_one(self, searcher, make_document, admin) -> None:
        make_document(admin, "x", title="Tagged", tags=["ab", "cd"])

        assert searcher.search(admin, SearchQuery(q='b", "c', type="document")).results == []
        assert searcher.search(admin, SearchQuery(q='"', type="document")).results == []
        assert _titles(searcher.search(admin, SearchQuery(q="CD", type="document"))) == ["Tagged"]
        assert searcher.suggestions(admin, 'b", "c') == []

    def test_unknown_type(self, searcher, admin) -> None:
        with pytest.raises(ValidationError, match="Unknown search type"):
            searcher.search(admin, SearchQuery(q="x", type="everything"))


class TestFilters:
    """Tests for category, dates and entity flags."""

    @pytest.fixture
    def corpus(self, make_document, admin):
        make_document(admin, "paid 100 USD", title="January", category="finance",
                      created_at=datetime(2024, 1, 10, 12, 0))
        make_document(admin, "meeting on 15.03.2024", title="February", category="legal",
                      created_at=datetime(2024, 2, 10, 9, 30))
        make_document(admin, "plain text", title="March", category="finance",
                      created_at=datetime(2024, 3, 10, 18, 45))

    def test_category_exact(self, searcher, corpus, admin) -> None:
        assert _titles(searcher.search(admin, SearchQuery(category="finance"))) == ["March", "January"]
        assert searcher.search(admin, SearchQuery(category="fin")).results == []

    def test_date_range_inclusive(self, searcher, corpus, admin) -> None:
        response = searcher.search(admin, SearchQuery(date_from="2024-01-10", date_to="2024-02-10"))
        assert _titles(response) == ["February", "January"]

    def test_date_from_only(self, searcher, corpus, admin) -> None:
        assert _titles(searcher.search(admin, SearchQuery(date_from="2024-02-11"))) == ["March"]

    def test_offset_dates_converted_to_utc(self, searcher, corpus, admin) -> None:
        # 12:00+03:00 is 09:00 UTC, before February's 09:30
        response = searcher.search(admin, SearchQuery(date_from="2024-02-10T12:00+03:00"))
        assert _titles(response) == ["March", "February"]
        response = searcher.search(admin, SearchQuery(date_to="2024-02-10T12:00+03:00"))
        assert _titles(response) == ["January"]

    def test_reversed_range(self, searcher, corpus, admin) -> None:
        with pytest.raises(ValidationError, match="after"):
            searcher.search(admin, SearchQuery(date_from="2024-03-01", date_to="2024-01-01"))

    def test_invalid_date(self, searcher, corpus, admin) -> None:
        with pytest.raises(ValidationError, match="Invalid date"):
            searcher.search(admin, SearchQuery(date_from="yesterday"))

    def test_has_amount(self, searcher, corpus, admin) -> None:
        assert _titles(searcher.search(admin, SearchQuery(has_amount=True))) == ["January"]

    def test_has_date(self, searcher, corpus, admin) -> None:
        assert _titles(searcher.search(admin, SearchQuery(has_date=True))) == ["February"]

    def test_flags_combined(self, searcher, corpus, admin) -> None:
        assert searcher.search(admin, SearchQuery(has_date=True, has_amount=True)).results == []

    def test_filters_combined_with_text(self, searcher, corpus, admin) -> None:
        response = searcher.search(admin, SearchQuery(q="paid", category="finance", has_amount=True))
        assert _titles(response) == ["January"]
        assert response.results[0].matched_pages[0].highlights == ["paid 100 USD"]

    def test_criteria_required(self, searcher, admin) -> None:
        with pytest.raises(ValidationError, match="At least one"):
            searcher.search(admin, SearchQuery())
        with pytest.raises(ValidationError):
            searcher.search(admin, SearchQuery(q="   "))


class TestPaginationQueries:
    """The count uses the same predicate as the page."""

    @pytest.fixture
    def corpus(self, make_document, admin):
        for day in range(1, 6):
            # two matching pages per document must still count once
            make_document(admin, f"report {day}", f"report appendix {day}", title=f"Report {day}",
                          created_at=datetime(2024, 1, day))

    def test_pages(self, searcher, corpus, admin) -> None:
        first = searcher.search(admin, SearchQuery(q="report", page=1, limit=2))
        assert _titles(first) == ["Report 5", "Report 4"]
        assert first.pagination == Pagination(page=1, limit=2, total=5, pages=3)

        last = searcher.search(admin, SearchQuery(q="report", page=3, limit=2))
        assert _titles(last) == ["Report 1"]

    def test_total_matches_all_results(self, searcher, corpus, admin) -> None:
        total = searcher.search(admin, SearchQuery(q="report")).pagination.total
        everything = searcher.search(admin, SearchQuery(q="report", limit=total))
        assert len(everything.results) == total == 5
        assert all(len(hit.matched_pages) == 2 for hit in everything.results)

    def test_beyond_last_page_is_empty(self, searcher, corpus, admin) -> None:
        response = searcher.search(admin, SearchQuery(q="report", page=10, limit=2))
        assert response.results == []
        assert response.pagination.total == 5

    def test_default_and_capped_limit(self, searcher, corpus, admin) -> None:
        assert searcher.search(admin, SearchQuery(q="report")).pagination.limit == 20
        assert searcher.search(admin, SearchQuery(q="report", limit=1000)).pagination.limit == 100

    @pytest.mark.parametrize("page, limit", [(0, 10), (-1, 10), (1, 0)])
    def test_invalid_paging(self, searcher, admin, page, limit) -> None:
        with pytest.raises(ValidationError):
            searcher.search(admin, SearchQuery(q="report", page=page, limit=limit))


class TestSuggestions:
    """Tests for autocomplete."""

    @pytest.fixture
    def corpus(self, make_document, alice, bob):
        make_document(alice, "Invoice for services rendered " + "x" * 200, title="Invoice March",
                      tags=["invoices", "finance"])
        make_document(alice, "unrelated", title="Contract", tags=["legal"])
        make_document(bob, "Invoice from bob", title="Invoice Bob", tags=["invoices-bob"])

    def test_short_queries(self, searcher, corpus, alice) -> None:
        assert searcher.suggestions(alice, "") == []
        assert searcher.suggestions(alice, "i") == []
        assert searcher.suggestions(alice, "  i ") == []
        assert searcher.suggestions(alice, None) == []

    def test_sources_tagged(self, searcher, corpus, alice) -> None:
        suggestions = searcher.suggestions(alice, "invoice")
        by_type = {}
        for s in suggestions:
            by_type.setdefault(s.type, []).append(s.value)

        assert by_type["document"] == ["Invoice March"]
        assert by_type["tag"] == ["invoices"]
        assert len(by_type["content"]) == 1
        assert by_type["content"][0].startswith("Invoice for services")
        assert len(by_type["content"][0]) == 100

    def test_scoped(self, searcher, corpus, alice, manager) -> None:
        assert "Invoice Bob" not in [s.value for s in searcher.suggestions(alice, "invoice")]
        assert "Invoice Bob" in [s.value for s in searcher.suggestions(manager, "invoice")]

    def test_capped_per_source(self, session_factory, make_document, admin) -> None:
        for i in range(7):
            make_document(admin, f"common text {i}", title=f"Common {i}", tags=[f"common-{i}"])
        searcher = SearchEngine(session_factory, SearchConfig(suggestion_limit=5))
        suggestions = searcher.suggestions(admin, "common")
        for kind in ("document", "tag", "content"):
            assert len([s for s in suggestions if s.type == kind]) == 5


class TestEntitySearch:
    """Tests for search_entities."""

    @pytest.fixture
    def corpus(self, make_document, alice, bob):
        make_document(alice, "cover page", "Write to billing@example.org about 250 EUR",
                      title="Billing", created_at=datetime(2024, 1, 1))
        make_document(alice, "example.org is mentioned but no address", title="Mention",
                      created_at=datetime(2024, 1, 2))
        make_document(bob, "contact audit@example.org", title="Bob mail", created_at=datetime(2024, 1, 3))

    def test_matches_entity_set_only(self, searcher, corpus, alice) -> None:
        response = searcher.search_entities(alice, email="example.org")
        assert _titles(response) == ["Billing"]
        hit = response.results[0]
        assert [m.page_order for m in hit.matched_pages] == [2]
        assert hit.matched_pages[0].matched_data["emails"] == ["billing@example.org"]
        assert hit.total_pages == 2

    def test_scoped(self, searcher, corpus, alice, manager) -> None:
        assert "Bob mail" not in _titles(searcher.search_entities(alice, email="audit"))
        assert _titles(searcher.search_entities(manager, email="audit")) == ["Bob mail"]

    def test_criteria_are_conjunctive_per_page(self, searcher, corpus, alice) -> None:
        assert _titles(searcher.search_entities(alice, email="billing", amount="EUR")) == ["Billing"]
        assert searcher.search_entities(alice, email="billing", amount="USD").results == []

    def test_keyword(self, searcher, corpus, alice) -> None:
        assert _titles(searcher.search_entities(alice, keyword="mentioned")) == ["Mention"]

    def test_requires_criteria(self, searcher, alice) -> None:
        with pytest.raises(ValidationError, match="At least one"):
            searcher.search_entities(alice)
        with pytest.raises(ValidationError, match="At least one"):
            searcher.search_entities(alice, email="  ")

    def test_unknown_field(self, searcher, alice) -> None:
        with pytest.raises(ValidationError, match="Unknown entity fields"):
            searcher.search_entities(alice, iban="DE00")
