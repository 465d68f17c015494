import unittest

from services.ai.news.types import NOT_INVESTMENT_ADVICE, ExecutorOutput, StrategistOutput
from services.ai.news.validation import (
    QualityWeights,
    apply_conviction_guardrail,
    compute_quality,
    enrich_asset_symbols,
    validate_executor,
    validate_strategy,
)


def _strategy(**overrides):
    data = {
        "informationNature": {"classification": "new_information", "confidence": 0.8, "reasoning": "surprise"},
        "marketImpactLogic": {
            "shouldMoveMarkets": True,
            "transmissionMechanisms": [{"channel": "rates", "direction": "negative", "magnitude": "moderate"}],
        },
        "requiredData": {"marketPrices": [{"symbol": "SPY", "type": "index"}, {"symbol": "BTC", "type": "crypto"}]},
        "outputDesign": {
            "scenarioMatrix": {
                "base": {"probability": 0.6},
                "upside": {"probability": 0.25},
                "downside": {"probability": 0.15},
            }
        },
        "executorInstructions": {"mandatoryTasks": ["Assess SPY"], "confidenceFloor": 0.6},
        "epistemicAssessment": {"incrementalInfoScore": 7},
    }
    data.update(overrides)
    return StrategistOutput.model_validate(data)


def _analysis(**overrides):
    data = {
        "executiveSummary": {"signal": "risk-off", "overallSentiment": "bearish"},
        "assetImpacts": [
            {"asset": "SPY", "direction": "short", "conviction": 7},
            {"asset": "Bitcoin", "tradingViewSymbol": "BINANCE:BTCUSDT", "direction": "short", "conviction": 6},
        ],
        "scenarioAnalysis": {
            "base": {"probability": 0.6},
            "upside": {"probability": 0.25},
            "downside": {"probability": 0.15},
        },
        "confidence": {"overall": 7},
    }
    data.update(overrides)
    return ExecutorOutput.model_validate(data)


class TestLenientParsing(unittest.TestCase):
    def test_empty_object_parses_to_defaults(self):
        s = StrategistOutput.model_validate({})
        self.assertIsNone(s.information_nature.classification)
        self.assertFalse(s.market_impact_logic.should_move_markets)
        self.assertEqual(s.required_data.market_prices, [])
        self.assertIn(NOT_INVESTMENT_ADVICE, s.executor_instructions.absolute_bans)

    def test_enums_are_normalized_or_dropped(self):
        s = _strategy(informationNature={"classification": "Narrative Reinforcement", "confidence": "0.7"})
        self.assertEqual(s.information_nature.classification, "narrative_reinforcement")
        a = _analysis(executiveSummary={"overallSentiment": "LEAN-BULLISH", "incrementalVsExpectations": "huge"})
        self.assertEqual(a.executive_summary.overall_sentiment, "lean_bullish")
        self.assertIsNone(a.executive_summary.incremental_vs_expectations)

    def test_scores_are_coerced_and_clamped(self):
        a = _analysis(assetImpacts=[{"asset": "SPY", "conviction": "12"}, {"asset": "QQQ", "conviction": 0}])
        self.assertEqual([i.conviction for i in a.asset_impacts], [10, 1])
        s = _strategy(informationNature={"classification": "noise", "confidence": 85})
        self.assertAlmostEqual(s.information_nature.confidence, 0.85)

    def test_percent_scale_scenarios_are_scaled_together(self):
        a = _analysis(scenarioAnalysis={
            "base": {"probability": 70},
            "upside": {"probability": "25%"},
            "downside": {"probability": 5},
        })
        s = a.scenario_analysis
        self.assertAlmostEqual(s.base.probability, 0.7)
        self.assertAlmostEqual(s.upside.probability, 0.25)
        self.assertAlmostEqual(s.downside.probability, 0.05)
        self.assertEqual(validate_executor(enrich_asset_symbols(a), _strategy()), [])

    def test_small_percentage_in_a_percent_triple_is_not_read_as_a_fraction(self):
        s = _strategy(outputDesign={"scenarioMatrix": {
            "base": {"probability": 70},
            "upside": {"probability": 29.5},
            "downside": {"probability": 0.5},
        }}).output_design.scenario_matrix
        self.assertAlmostEqual(s.downside.probability, 0.005)
        self.assertAlmostEqual(s.base.probability + s.upside.probability + s.downside.probability, 1.0)

    def test_fraction_scale_scenarios_are_left_alone(self):
        a = _analysis()
        s = a.scenario_analysis
        self.assertEqual((s.base.probability, s.upside.probability, s.downside.probability), (0.6, 0.25, 0.15))

    def test_single_unit_field_above_one_is_a_percentage(self):
        self.assertAlmostEqual(_strategy(informationNature={"confidence": 5}).information_nature.confidence, 0.05)
        self.assertAlmostEqual(_strategy(informationNature={"confidence": "40%"}).information_nature.confidence, 0.4)
        self.assertAlmostEqual(_strategy(informationNature={"confidence": 0.7}).information_nature.confidence, 0.7)
        self.assertEqual(_strategy(informationNature={"confidence": 250}).information_nature.confidence, 1.0)

    def test_not_advice_ban_is_appended_once(self):
        s = _strategy(executorInstructions={"absoluteBans": ["No price targets"]})
        self.assertEqual(s.executor_instructions.absolute_bans, ["No price targets", NOT_INVESTMENT_ADVICE])
        s = _strategy(executorInstructions={"absoluteBans": ["this is NOT investment advice"]})
        self.assertEqual(s.executor_instructions.absolute_bans, ["this is NOT investment advice"])


class TestValidateStrategy(unittest.TestCase):
    def test_clean_strategy_has_no_warnings(self):
        self.assertEqual(validate_strategy(_strategy()), [])

    def test_missing_fields_are_reported(self):
        warnings = validate_strategy(StrategistOutput.model_validate({}))
        self.assertIn("Missing information classification", warnings)
        self.assertIn("No transmission mechanisms defined", warnings)
        self.assertIn("No market prices specified", warnings)
        self.assertIn("No mandatory tasks for executor", warnings)

    def test_noise_that_moves_markets_is_a_contradiction(self):
        s = _strategy(informationNature={"classification": "noise", "confidence": 0.5})
        self.assertIn("Contradiction: Classified as noise but should move markets", validate_strategy(s))

    def test_low_incremental_info_with_expected_move(self):
        s = _strategy(epistemicAssessment={"incrementalInfoScore": 2})
        self.assertIn("Low incremental info but expecting market movement", validate_strategy(s))

    def test_extra_check_plan_matrix_probability_sum(self):
        s = _strategy(outputDesign={"scenarioMatrix": {
            "base": {"probability": 0.5},
            "upside": {"probability": 0.4},
            "downside": {"probability": 0.3},
        }})
        warnings = validate_strategy(s)
        self.assertEqual(warnings, ["Strategy scenario probabilities sum to 120% (should be ~100%)"])
        q = compute_quality(s, _analysis(), warnings, [])
        self.assertEqual(q.executor_adherence, 1.0)

    def test_low_incremental_info_without_expected_move_is_fine(self):
        s = _strategy(
            epistemicAssessment={"incrementalInfoScore": 2},
            marketImpactLogic={
                "shouldMoveMarkets": False,
                "transmissionMechanisms": [{"channel": "sentiment"}],
            },
        )
        self.assertEqual(validate_strategy(s), [])


class TestValidateExecutor(unittest.TestCase):
    def test_exact_probabilities_and_full_coverage_are_silent(self):
        analysis = enrich_asset_symbols(_analysis())
        self.assertEqual(validate_executor(analysis, _strategy()), [])

    def test_probabilities_over_one_hundred_percent(self):
        analysis = _analysis(scenarioAnalysis={
            "base": {"probability": 0.5},
            "upside": {"probability": 0.4},
            "downside": {"probability": 0.3},
        })
        warnings = validate_executor(enrich_asset_symbols(analysis), _strategy())
        self.assertIn("Scenario probabilities sum to 120% (should be ~100%)", warnings)

    def test_within_tolerance_is_silent(self):
        analysis = _analysis(scenarioAnalysis={
            "base": {"probability": 0.55},
            "upside": {"probability": 0.25},
            "downside": {"probability": 0.15},
        })
        self.assertEqual(validate_executor(enrich_asset_symbols(analysis), _strategy()), [])

    def test_confidence_below_floor(self):
        analysis = _analysis(confidence={"overall": 4})
        self.assertIn("Confidence below strategist floor", validate_executor(analysis, _strategy()))

    def test_missing_confidence_skips_floor_check(self):
        analysis = enrich_asset_symbols(_analysis(confidence={}))
        self.assertNotIn("Confidence below strategist floor", validate_executor(analysis, _strategy()))

    def test_missing_asset_is_reported_by_original_symbol(self):
        analysis = _analysis(assetImpacts=[{"asset": "SPY", "conviction": 5}])
        warnings = validate_executor(enrich_asset_symbols(analysis), _strategy())
        self.assertIn("Missing analysis for: BTC", warnings)

    def test_enrichment_fills_symbols(self):
        analysis = enrich_asset_symbols(_analysis())
        spy, btc = analysis.asset_impacts
        self.assertEqual(spy.normalized_symbol, "SPY")
        self.assertEqual(spy.trading_view_symbol, "AMEX:SPY")
        self.assertEqual(btc.normalized_symbol, "BTCUSD")
        self.assertEqual(btc.trading_view_symbol, "BINANCE:BTCUSDT")


class TestConvictionGuardrail(unittest.TestCase):
    def test_caps_when_no_move_expected_without_mutating_input(self):
        strategy = _strategy(
            informationNature={"classification": "confirmation", "confidence": 0.9},
            marketImpactLogic={"shouldMoveMarkets": False},
        )
        analysis = _analysis(assetImpacts=[
            {"asset": "SPY", "conviction": 9},
            {"asset": "TLT", "conviction": 4},
        ])
        guarded, warnings = apply_conviction_guardrail(analysis, strategy)

        self.assertEqual([a.conviction for a in guarded.asset_impacts], [5, 4])
        self.assertEqual([a.conviction for a in analysis.asset_impacts], [9, 4])
        self.assertEqual(warnings, ["Conviction capped at 5 for SPY: strategy expects no market move"])

    def test_noise_is_guarded_even_if_flagged_as_moving(self):
        strategy = _strategy(informationNature={"classification": "noise", "confidence": 0.3})
        guarded, warnings = apply_conviction_guardrail(_analysis(), strategy)
        self.assertTrue(all(a.conviction <= 5 for a in guarded.asset_impacts))
        self.assertEqual(len(warnings), 1)

    def test_noise_cap_says_why(self):
        strategy = _strategy(informationNature={"classification": "noise", "confidence": 0.3})
        _, warnings = apply_conviction_guardrail(_analysis(), strategy)
        self.assertTrue(warnings[0].endswith(": classified as noise"))

    def test_market_moving_confirmation_is_untouched(self):
        strategy = _strategy(informationNature={"classification": "confirmation", "confidence": 0.8})
        analysis = _analysis(assetImpacts=[{"asset": "SPY", "conviction": 8}, {"asset": "BTC", "conviction": 8}])
        guarded, warnings = apply_conviction_guardrail(analysis, strategy)

        self.assertIs(guarded, analysis)
        self.assertEqual(warnings, [])
        self.assertEqual([a.conviction for a in guarded.asset_impacts], [8, 8])
        q = compute_quality(strategy, guarded, [], validate_executor(enrich_asset_symbols(guarded), strategy))
        self.assertEqual(q.executor_adherence, 1.0)

    def test_market_moving_news_is_untouched(self):
        analysis = _analysis()
        guarded, warnings = apply_conviction_guardrail(analysis, _strategy())
        self.assertIs(guarded, analysis)
        self.assertEqual(warnings, [])


class TestQuality(unittest.TestCase):
    def test_weighted_score(self):
        q = compute_quality(_strategy(), _analysis(confidence={"overall": 6}), [], [])
        # 0.4 * 0.8 + 0.3 * 1.0 + 0.3 * 0.6
        self.assertAlmostEqual(q.overall_quality, 0.80)
        self.assertAlmostEqual(q.executor_adherence, 1.0)

    def test_each_executor_warning_costs_adherence(self):
        q = compute_quality(_strategy(), _analysis(), ["s1"], ["e1", "e2"])
        self.assertAlmostEqual(q.executor_adherence, 0.8)
        # 0.4 * 0.8 + 0.3 * 0.8 + 0.3 * 0.7
        self.assertAlmostEqual(q.overall_quality, 0.77)
        self.assertEqual(q.warnings, ["s1", "e1", "e2"])

    def test_guardrail_notes_are_reported_but_not_penalized(self):
        note = "Conviction capped at 5 for SPY: strategy expects no market move"
        q = compute_quality(_strategy(), _analysis(confidence={"overall": 6}), [], [], notes=[note])
        self.assertEqual(q.executor_adherence, 1.0)
        self.assertAlmostEqual(q.overall_quality, 0.80)
        self.assertEqual(q.warnings, [note])

    def test_adherence_never_negative(self):
        q = compute_quality(_strategy(), _analysis(), [], ["w"] * 15)
        self.assertEqual(q.executor_adherence, 0.0)

    def test_missing_executor_confidence_uses_midpoint(self):
        q = compute_quality(_strategy(), _analysis(confidence={}), [], [])
        self.assertAlmostEqual(q.overall_quality, 0.4 * 0.8 + 0.3 + 0.3 * 0.5)

    def test_skipped_executor_scores_strategist_only(self):
        q = compute_quality(_strategy(), None, ["s1"], [])
        self.assertEqual(q.executor_adherence, 0.0)
        self.assertAlmostEqual(q.overall_quality, 0.8)
        self.assertEqual(q.warnings, ["s1"])

    def test_custom_weights(self):
        w = QualityWeights(strategist=1.0, adherence=0.0, executor=0.0)
        q = compute_quality(_strategy(), _analysis(), [], [], w)
        self.assertAlmostEqual(q.overall_quality, 0.8)


if __name__ == "__main__":
    unittest.main()
