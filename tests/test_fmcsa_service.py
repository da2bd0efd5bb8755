from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import fmcsa_service
from safer_fetch import FetchError
from fmcsa_service import (
    FMCSAService, parse_lookup_html, map_fmcsa_to_carrier_data, lookup_with_database, lookup_batch,
)
from carrier_store import get_carrier, upsert_carrier


def _service(response):
    service = MagicMock()
    service.lookup_carrier = AsyncMock(return_value=response)
    return service


FOUND = {
    "success": True,
    "source": "fmcsa",
    "data": {
        "dot_number": "1234567",
        "legal_name": "ROADRUNNER HAULING INC",
        "safety_rating": "conditional",
        "insurance_status": "Inactive",
        "authority_status": "Inactive",
        "power_units": 1042,
    },
}


class TestParseLookupHtml:
    def test_query_labels(self, load_html):
        data = parse_lookup_html(load_html("safer_lookup.html"), "1234567")

        assert data["dot_number"] == "1234567"
        assert data["data_source"] == "fmcsa"
        assert data["legal_name"] == "ROADRUNNER HAULING INC"
        assert "dba_name" not in data
        assert data["physical_address"] == "400 RIVER RD DALLAS, TX 75201"
        assert data["phone"] == "(214) 555-0199"
        assert data["safety_rating"] == "conditional"
        assert data["operating_status"] == "NOT AUTHORIZED"
        assert data["authority_status"] == "Inactive"
        assert data["insurance_status"] == "Inactive"
        assert data["mc_number"] == "MC-778899"
        assert data["power_units"] == 1042
        assert "drivers" not in data

    def test_scripting_page_uses_title(self, load_html):
        data = parse_lookup_html(load_html("safer_scripting.html"), "1234567")

        assert data["legal_name"] == "ROADRUNNER HAULING INC"
        assert data["safety_rating"] == "not-rated"
        assert data["authority_status"] == "Unknown"

    def test_no_name_returns_none(self, load_html):
        assert parse_lookup_html(load_html("safer_inactive.html"), "7654321") is None


class TestFMCSAService:
    @pytest.mark.parametrize("dot, valid", [("1234567", True), ("123456", True), ("12345", False),
                                            ("123456789", False), ("USDOT 1234567", True), (None, False)])
    def test_dot_number_validation(self, dot, valid):
        assert FMCSAService.is_valid_dot_number(dot) is valid

    @pytest.mark.asyncio
    async def test_invalid_dot_number(self):
        result = await FMCSAService().lookup_carrier("123")
        assert result == {"success": False, "data": None, "error": "Invalid DOT number format", "source": "fmcsa"}

    @pytest.mark.asyncio
    async def test_results_are_cached(self):
        service = FMCSAService()
        with patch.object(service, "fetch_from_fmcsa", new=AsyncMock(return_value=FOUND["data"])) as fetch:
            first = await service.lookup_carrier("1234567", session=MagicMock())
            second = await service.lookup_carrier("1234567", session=MagicMock())

        assert first["source"] == "fmcsa"
        assert second["cached"] is True
        assert second["source"] == "cache"
        fetch.assert_awaited_once()
        assert service.get_cache_stats() == {"size": 1, "entries": ["1234567"]}
        service.clear_cache()
        assert service.get_cache_stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_expired_cache_entry_is_dropped(self):
        service = FMCSAService(cache_ttl=0)
        with patch.object(service, "fetch_from_fmcsa", new=AsyncMock(return_value=FOUND["data"])) as fetch:
            await service.lookup_carrier("1234567", session=MagicMock())
            await service.lookup_carrier("1234567", session=MagicMock())
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_not_found(self):
        service = FMCSAService()
        with patch.object(service, "fetch_from_fmcsa", new=AsyncMock(return_value=None)):
            result = await service.lookup_carrier("1234567", session=MagicMock())
        assert result["success"] is False
        assert result["error"] == "Carrier not found in FMCSA database"

    @pytest.mark.asyncio
    async def test_falls_back_to_company_snapshot(self, load_html):
        service = FMCSAService(use_browser=False)
        with patch("fmcsa_service.get_query_snapshot",
                   new=AsyncMock(side_effect=FetchError("FMCSA API returned 500: Server Error", http_status=500))), \
                patch("fmcsa_service.get_company_snapshot", new=AsyncMock(return_value=load_html("safer_lookup.html"))):
            data = await service.fetch_from_fmcsa(MagicMock(), "1234567")
        assert data["legal_name"] == "ROADRUNNER HAULING INC"

    @pytest.mark.asyncio
    async def test_both_endpoints_failing_reports_first_error(self):
        service = FMCSAService(use_browser=False)
        with patch("fmcsa_service.get_query_snapshot",
                   new=AsyncMock(side_effect=FetchError("FMCSA API returned 500: Server Error", http_status=500))), \
                patch("fmcsa_service.get_company_snapshot",
                      new=AsyncMock(side_effect=FetchError("Company snapshot request failed: 502", http_status=502))):
            result = await service.lookup_carrier("1234567", session=MagicMock())
        assert result["success"] is False
        assert result["error"] == "FMCSA API returned 500: Server Error"

    @pytest.mark.asyncio
    async def test_browser_render_for_scripting_pages(self, load_html):
        service = FMCSAService(use_browser=True)
        render = AsyncMock(return_value=load_html("safer_lookup.html"))
        with patch("fmcsa_service.get_query_snapshot", new=AsyncMock(return_value=load_html("safer_scripting.html"))), \
                patch("fmcsa_service.render_company_snapshot", new=render):
            data = await service.fetch_from_fmcsa(MagicMock(), "1234567")
        render.assert_awaited_once_with("1234567")
        assert data["mc_number"] == "MC-778899"


class TestMapping:
    def test_defaults_and_trust_score(self, now):
        mapped = map_fmcsa_to_carrier_data({"dot_number": "1234567", "legal_name": "X", "power_units": 3}, now=now)
        assert mapped["safety_rating"] == "not-rated"
        assert mapped["insurance_status"] == "Unknown"
        assert mapped["vehicle_count"] == 3
        assert mapped["verified"] is True
        assert mapped["verification_date"] == now
        assert 0 < mapped["trust_score"] <= 100

    def test_trust_score_failure_uses_default(self, now):
        with patch("fmcsa_service.calculate_trust_score", side_effect=ValueError("bad")):
            mapped = map_fmcsa_to_carrier_data({"dot_number": "1234567"}, now=now)
        assert mapped["trust_score"] == 95


class TestLookupWithDatabase:
    @pytest.mark.asyncio
    async def test_requires_dot_number(self, db):
        assert await lookup_with_database(db, "") == {"success": False, "error": "DOT number is required"}

    @pytest.mark.asyncio
    async def test_rejects_short_dot_number(self, db):
        result = await lookup_with_database(db, "12-34")
        assert result["error"] == "Invalid DOT number format"
        assert result["message"] == "DOT number must be at least 6 digits"

    @pytest.mark.asyncio
    async def test_fresh_row_is_served_from_database(self, db, now):
        upsert_carrier(db, {"dot_number": "1234567", "legal_name": "ACME TRUCKING LLC"}, "fmcsa", now=now)
        service = _service(FOUND)

        result = await lookup_with_database(db, "1234567", service=service, now=now + timedelta(hours=1))

        assert result["success"] is True
        assert result["source"] == "database"
        assert result["cached"] is False
        assert result["freshness"]["is_fresh"] is True
        assert result["data"]["legal_name"] == "ACME TRUCKING LLC"
        service.lookup_carrier.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_rows_stay_fresh_longer(self, db, now):
        upsert_carrier(db, {"dot_number": "1234567", "legal_name": "ACME TRUCKING LLC"}, "manual", now=now)
        service = _service(FOUND)

        result = await lookup_with_database(db, "1234567", service=service, now=now + timedelta(days=10))

        assert result["source"] == "database"
        assert result["freshness"]["is_fresh"] is False

    @pytest.mark.asyncio
    async def test_stale_row_is_refreshed(self, db, now):
        upsert_carrier(db, {"dot_number": "1234567", "legal_name": "OLD NAME"}, "fmcsa", now=now - timedelta(days=8))
        service = _service(FOUND)

        result = await lookup_with_database(db, "1234567", service=service, now=now)

        assert result["source"] == "fmcsa"
        assert result["data"]["legal_name"] == "ROADRUNNER HAULING INC"
        assert result["data"]["vehicle_count"] == 1042
        carrier = get_carrier(db, "1234567")
        assert carrier.verified is True
        assert carrier.safety_rating == "conditional"

    @pytest.mark.asyncio
    async def test_force_refresh_skips_database(self, db, now):
        upsert_carrier(db, {"dot_number": "1234567", "legal_name": "ACME TRUCKING LLC"}, "fmcsa", now=now)
        service = _service(FOUND)

        result = await lookup_with_database(db, "1234567", force_refresh=True, service=service, now=now)

        assert result["source"] == "fmcsa"
        service.lookup_carrier.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_not_found(self, db):
        service = _service({"success": False, "data": None, "error": "Carrier not found in FMCSA database"})

        result = await lookup_with_database(db, "1234567", service=service)

        assert result["success"] is False
        assert result["error"] == "Carrier not found"
        assert result["searched_sources"] == ["database", "fmcsa"]


class TestLookupBatch:
    @pytest.mark.asyncio
    async def test_rejects_large_batches(self, db):
        result = await lookup_batch(db, [str(100000 + i) for i in range(11)])
        assert result == {"success": False, "error": "Maximum 10 DOT numbers per batch request"}

    @pytest.mark.asyncio
    async def test_rejects_empty_batches(self, db):
        result = await lookup_batch(db, [])
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_counts_results(self, db):
        service = _service(FOUND)
        with patch.object(fmcsa_service, "SYNC_DELAY", 0):
            result = await lookup_batch(db, ["1234567", "12"], service=service)

        assert result["success"] is True
        assert result["total"] == 2
        assert result["successful"] == 1
        assert result["failed"] == 1
        assert result["results"][1]["error"] == "Invalid DOT number format"

    @pytest.mark.asyncio
    async def test_lookup_exception_is_reported_per_dot(self, db):
        outcomes = [{"success": True, "source": "database", "data": {"dot_number": "1234567"}},
                    RuntimeError("database is locked")]
        with patch.object(fmcsa_service, "SYNC_DELAY", 0), \
                patch("fmcsa_service.lookup_with_database", new=AsyncMock(side_effect=outcomes)):
            result = await lookup_batch(db, ["1234567", "7654321"], service=_service(FOUND))

        assert (result["total"], result["successful"], result["failed"]) == (2, 1, 1)
        failed = result["results"][1]
        assert failed["dot_number"] == "7654321"
        assert failed["error"] == "Lookup failed"
        assert failed["message"] == "database is locked"
