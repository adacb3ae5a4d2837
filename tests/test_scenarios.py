"""
Tests for scenario pool materialization, caching and selection.
"""

from src.frontdesk.config_source import InMemoryConfigSource
from src.frontdesk.models import (
    Scenario,
    ScenarioOverride,
    ScenarioTemplate,
    TenantConfig,
)
from src.frontdesk.scenarios import (
    ScenarioPool,
    ScenarioPoolCache,
    ScenarioSelector,
    choose_reply,
)


def _source():
    source = InMemoryConfigSource()
    source.put_template(
        ScenarioTemplate(
            id="hvac",
            scenarios=(
                Scenario(id="ac_repair", trigger_keywords=("ac not cooling",), priority=50),
                Scenario(id="hours", trigger_keywords=("business hours",), priority=10),
                Scenario(id="service_area", trigger_keywords=("service area",), enabled=False),
            ),
        )
    )
    source.put_tenant(
        TenantConfig(
            tenant_id="alpha",
            template_ids=("hvac",),
            overrides=(
                ScenarioOverride(scenario_id="service_area", enabled=True),
                ScenarioOverride(scenario_id="hours", enabled=False),
                ScenarioOverride(scenario_id="missing", enabled=True),
            ),
            custom_scenarios=(Scenario(id="membership", trigger_keywords=("membership",)),),
        )
    )
    source.put_tenant(TenantConfig(tenant_id="beta", template_ids=("hvac",)))
    return source


class TestScenarioPool:
    """Tests for template + override + custom merging."""

    def test_merge_order_and_enabled_gate(self):
        pool = ScenarioPool.build("alpha", _source())
        ids = [s.id for s in pool]
        assert ids == ["ac_repair", "service_area", "membership"]
        assert pool.get("hours") is None

    def test_tenants_are_isolated(self):
        source = _source()
        alpha = ScenarioPool.build("alpha", source)
        beta = ScenarioPool.build("beta", source)
        assert beta.get("membership") is None
        assert beta.get("hours") is not None
        assert beta.get("service_area") is None
        assert alpha.get("membership") is not None

    def test_override_changes_priority(self):
        source = _source()
        source.put_tenant(
            TenantConfig(
                tenant_id="gamma",
                template_ids=("hvac",),
                overrides=(ScenarioOverride(scenario_id="hours", priority=99),),
            )
        )
        pool = ScenarioPool.build("gamma", source)
        assert pool.get("hours").priority == 99
        assert ScenarioPool.build("beta", source).get("hours").priority == 10

    def test_sample_tenant(self, file_source):
        pool = ScenarioPool.build("demo", file_source)
        assert pool.get("service_area") is not None
        assert pool.get("membership") is not None
        assert pool.get("maintenance").priority == 45


class TestScenarioPoolCache:
    """Tests for explicit per-tenant caching."""

    def test_hit_then_invalidate(self):
        cache = ScenarioPoolCache(_source())
        first = cache.get("alpha")
        assert cache.get("alpha") is first
        assert cache.stats()["hits"] == 1

        assert cache.invalidate("alpha") is True
        assert cache.get("alpha") is not first
        assert cache.invalidate("nobody") is False

    def test_generation_bump_rebuilds(self):
        source = _source()
        cache = ScenarioPoolCache(source)
        before = cache.get("beta")

        source.put_template(
            ScenarioTemplate(id="hvac", scenarios=(Scenario(id="only", trigger_keywords=("x",)),))
        )
        after = cache.get("beta")
        assert after is not before
        assert [s.id for s in after] == ["only"]

    def test_invalidating_one_tenant_keeps_another(self):
        cache = ScenarioPoolCache(_source())
        alpha = cache.get("alpha")
        cache.get("beta")
        cache.invalidate("beta")
        assert cache.get("alpha") is alpha
        cache.invalidate_all()
        assert cache.stats()["tenants"] == 0


class TestScenarioSelector:
    """Tests for scoring and ranking."""

    def test_exact_phrase_scores_full_keyword_weight(self):
        selector = ScenarioSelector()
        assert selector.keyword_score("my ac not cooling at all", "ac not cooling") == 1.0

    def test_partial_overlap_scores_lower(self):
        selector = ScenarioSelector()
        score = selector.keyword_score("the ac stopped cooling", "ac not cooling")
        assert 0.0 < score < 1.0

    def test_priority_beats_confidence(self):
        pool = (
            Scenario(id="exact", trigger_keywords=("water leak",), priority=1),
            Scenario(id="urgent", trigger_keywords=("leak emergency",), priority=9),
        )
        result = ScenarioSelector(default_threshold=0.3).select("i have a water leak", pool)
        assert result.scenario.id == "urgent"
        exact = next(a for a in result.alternates if a.scenario.id == "exact")
        assert exact.confidence > result.confidence

    def test_equal_priority_equal_confidence_uses_declaration_order(self):
        pool = (
            Scenario(id="first", trigger_keywords=("furnace",)),
            Scenario(id="second", trigger_keywords=("furnace",)),
        )
        result = ScenarioSelector().select("furnace", pool)
        assert result.scenario.id == "first"
        assert result.ambiguity is not None
        assert result.ambiguity.scenario_ids == ("first", "second")

    def test_negative_keyword_blocks(self):
        pool = (
            Scenario(id="ac_repair", trigger_keywords=("ac",), negative_keywords=("tuneup",)),
            Scenario(id="maintenance", trigger_keywords=("tuneup",)),
        )
        result = ScenarioSelector().select("ac tuneup please", pool)
        assert result.scenario.id == "maintenance"
        assert result.blocked == ["ac_repair"]

    def test_per_scenario_threshold(self):
        pool = (Scenario(id="strict", trigger_keywords=("membership plan",), confidence_threshold=0.99),)
        result = ScenarioSelector().select("tell me about the plan", pool)
        assert not result.matched

    def test_no_match_below_threshold(self):
        pool = (Scenario(id="hours", trigger_keywords=("business hours",)),)
        result = ScenarioSelector().select("my dog ate the remote", pool)
        assert result.scenario is None
        assert result.confidence < 0.45

    def test_empty_utterance(self):
        pool = (Scenario(id="hours", trigger_keywords=("business hours",)),)
        assert not ScenarioSelector().select("   ", pool).matched


class TestChooseReply:
    """Tests for reply rotation."""

    def test_rotation_by_turn_and_placeholders(self):
        scenario = Scenario(id="hours", replies=("A {company_name}", "B {company_name}"))
        assert choose_reply(scenario, 2, {"company_name": "Penguin Air"}) == "A Penguin Air"
        assert choose_reply(scenario, 3, {"company_name": "Penguin Air"}) == "B Penguin Air"

    def test_no_replies(self):
        assert choose_reply(Scenario(id="x"), 1, {}) == ""
