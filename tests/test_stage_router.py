"""
HR Process Engine
Tests — Stage Router.

Pure routing over transient Stage objects: linear advance, conditional
rules, snapshot ordering, completion vs. missing stage, operators.
"""

import pytest

from hrflow.models.program import Stage
from hrflow.services.stage_router import (
    RouteResult,
    apply_snapshot,
    calculate_next_stage,
    evaluate_condition,
    find_stage,
    route,
)


def _stage(stage_id, name=None, *, rules=None, original=None):
    return Stage(
        id=stage_id,
        program_id=1,
        name=name or f"S{stage_id}",
        stage_type="form",
        config={"routingRules": rules} if rules else {},
        original_stage_id=original,
    )


@pytest.fixture()
def pipeline():
    return [_stage(1), _stage(2), _stage(3)]


class TestLinearRouting:
    def test_advances_to_next_stage(self, pipeline):
        assert route("1", pipeline, {}) == RouteResult(next_stage_id="2")

    def test_last_stage_completes(self, pipeline):
        result = route("3", pipeline, {})
        assert result.completed is True
        assert result.next_stage_id is None
        assert result.not_found is False

    def test_unknown_current_stage_is_not_completion(self, pipeline):
        result = route("42", pipeline, {})
        assert result.not_found is True
        assert result.completed is False

    def test_plain_contract_collapses_to_none(self, pipeline):
        assert calculate_next_stage("1", pipeline, {}) == "2"
        assert calculate_next_stage("3", pipeline, {}) is None
        assert calculate_next_stage("42", pipeline, {}) is None

    def test_original_stage_id_resolves(self):
        stages = [_stage(10, original="intro"), _stage(11)]
        assert find_stage(stages, "intro").id == 10
        assert route("intro", stages, {}).next_stage_id == "11"

    def test_routing_is_deterministic(self, pipeline):
        results = {route("1", pipeline, {"x": 1}) for _ in range(5)}
        assert results == {RouteResult(next_stage_id="2")}


class TestConditionalRouting:
    def test_first_matching_rule_wins(self):
        stages = [
            _stage(1, rules=[
                {"condition": {"field": "score", "op": "gt", "value": 80}, "targetStageId": "4"},
                {"condition": {"field": "score", "op": "gt", "value": 50}, "targetStageId": "3"},
            ]),
            _stage(2), _stage(3), _stage(4),
        ]
        assert route("1", stages, {"score": 90}).next_stage_id == "4"
        assert route("1", stages, {"score": 60}).next_stage_id == "3"
        assert route("1", stages, {"score": 10}).next_stage_id == "2"

    def test_rule_with_unknown_target_is_skipped(self):
        stages = [
            _stage(1, rules=[
                {"condition": {"field": "a", "value": 1}, "targetStageId": "missing"},
                {"condition": {"field": "a", "value": 1}, "targetStageId": "3"},
            ]),
            _stage(2), _stage(3),
        ]
        assert route("1", stages, {"a": 1}).next_stage_id == "3"

    def test_rule_without_condition_always_matches(self):
        stages = [_stage(1, rules=[{"targetStageId": "3"}]), _stage(2), _stage(3)]
        assert route("1", stages, {}).next_stage_id == "3"


class TestSnapshot:
    def test_snapshot_reorders_pipeline(self, pipeline):
        ordered = apply_snapshot(pipeline, ["3", "1", "2"])
        assert [s.id for s in ordered] == [3, 1, 2]
        assert route("1", pipeline, {}, ["3", "1", "2"]).next_stage_id == "2"
        assert route("2", pipeline, {}, ["3", "1", "2"]).completed is True

    def test_stages_missing_from_snapshot_go_last(self, pipeline):
        added = _stage(4)
        live = [added, *pipeline]
        ordered = apply_snapshot(live, ["1", "2", "3"])
        assert [s.id for s in ordered] == [1, 2, 3, 4]
        assert route("3", live, {}, ["1", "2", "3"]).next_stage_id == "4"

    def test_empty_snapshot_keeps_live_order(self, pipeline):
        assert apply_snapshot(pipeline, None) == pipeline
        assert apply_snapshot(pipeline, []) == pipeline


class TestOperators:
    @pytest.mark.parametrize("condition, data, expected", [
        ({"field": "a", "op": "eq", "value": "x"}, {"a": "x"}, True),
        ({"field": "a", "op": "eq", "value": "x"}, {"a": "y"}, False),
        ({"field": "a", "op": "neq", "value": "x"}, {"a": "y"}, True),
        ({"field": "n", "op": "gt", "value": 5}, {"n": 7}, True),
        ({"field": "n", "op": "gt", "value": 5}, {"n": "7"}, True),
        ({"field": "n", "op": "lt", "value": 5}, {"n": 7}, False),
        ({"field": "n", "op": "gt", "value": 5}, {}, False),
        ({"field": "tags", "op": "contains", "value": "vip"}, {"tags": ["vip", "new"]}, True),
        ({"field": "tags", "op": "contains", "value": "vip"}, {"tags": "vip"}, False),
        ({"field": "a", "op": "exists"}, {"a": 0}, True),
        ({"field": "a", "op": "exists"}, {"a": ""}, True),
        ({"field": "a", "op": "exists"}, {"a": None}, False),
        ({"field": "a", "op": "exists"}, {}, False),
        ({"field": "a", "op": "regex", "value": "x"}, {"a": "x"}, True),
        (None, {}, True),
    ])
    def test_evaluate_condition(self, condition, data, expected):
        assert evaluate_condition(condition, data) is expected
