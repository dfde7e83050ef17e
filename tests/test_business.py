"""Tests for tenant bundles and the business registry."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from replyrouter.business.models import DiscontinuedMapping, LayerPolicy, format_baht, includes_any
from replyrouter.business.registry import business_ids, clear_cache, get_business_config


class TestRegistry:
    def test_both_tenants_ship(self):
        assert set(business_ids()) >= {"dji13store", "evlifethailand"}

    def test_unknown_tenant_falls_back_to_default(self):
        assert get_business_config("no-such-shop").id == "dji13store"

    def test_missing_id_falls_back_to_default(self):
        assert get_business_config(None).id == "dji13store"
        assert get_business_config("").id == "dji13store"

    def test_configs_are_cached(self):
        assert get_business_config("dji13store") is get_business_config("dji13store")

    def test_clear_cache_reloads(self):
        before = get_business_config("dji13store")
        clear_cache()
        after = get_business_config("dji13store")
        assert after is not before
        assert after == before

    def test_config_is_frozen(self, biz):
        with pytest.raises(ValidationError):
            biz.name = "Other"


class TestCatalogHelpers:
    def test_active_products_excludes_discontinued(self, biz):
        names = {p.name for p in biz.active_products()}
        assert "DJI Mini 4K" in names
        assert "DJI Mini 3" not in names

    def test_categories_are_unique_in_catalog_order(self, biz):
        assert biz.categories() == ["Drone", "FPV Drone", "Action Camera", "Gimbal"]

    def test_cheapest_products_sorted_by_price(self, biz):
        prices = [p.price for p in biz.cheapest_products(3)]
        assert prices == sorted(prices)
        assert biz.cheapest_products(3)[0].name == "DJI Osmo Mobile 7P"

    def test_products_by_category_is_case_insensitive(self, biz):
        assert len(biz.products_by_category("gimbal")) == 2

    def test_search_finds_product_by_name(self, biz):
        hits = biz.search_products("ขอดู Osmo Pocket 3 หน่อย")
        assert [p.name for p in hits] == ["Osmo Pocket 3"]

    def test_search_ranks_longer_names_first(self, biz):
        hits = biz.search_products("DJI Avata 2")
        assert hits[0].name == "DJI Avata 2 Fly More Combo (Single Battery)"
        assert "DJI Avata 2 (Drone Only)" in [p.name for p in hits]

    def test_search_blank_query_returns_nothing(self, biz):
        assert biz.search_products("   ") == []


class TestTriggerMatching:
    def test_longest_sale_script_trigger_wins(self, biz):
        script = biz.match_sale_script("มีเก็บเงินปลายทางไหม")
        assert script.id == 1096

    def test_no_sale_script_match(self, biz):
        assert biz.match_sale_script("สวัสดี") is None

    def test_knowledge_doc_match(self, biz):
        assert biz.match_knowledge_doc("หน้าร้านอยู่ไหน").id == 390

    def test_discontinued_mapping_with_note(self, biz):
        mapping = biz.policy.match_discontinued("ยังมี Mini 3 ไหม")
        response = biz.policy.build_discontinued_response(mapping)
        assert "**DJI Mini 4K**" in response
        assert "9,990" in response

    def test_discontinued_mapping_without_note(self):
        policy = LayerPolicy(
            discontinued_mappings=[DiscontinuedMapping(triggers=["old one"], recommended="New One")],
        )
        response = policy.build_discontinued_response(policy.match_discontinued("the OLD ONE please"))
        assert response.endswith("**New One** แทนครับ")


class TestFormatting:
    def test_format_baht_uses_thousand_separators(self):
        assert format_baht(9990) == "9,990"
        assert format_baht(125000.0) == "125,000"

    def test_includes_any_ignores_blank_triggers(self):
        assert not includes_any("anything", ["", "nothing"])
        assert includes_any("ติดต่อ admin หน่อย", ["ADMIN"])
