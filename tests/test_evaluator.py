"""Tests for flag targeting evaluation and evaluation details."""

from datetime import datetime, timedelta, timezone

import pytest

from src.flags.details import AllocationEvaluationCode, FlagEvaluationCode
from src.flags.errors import FlagEvaluationError
from src.flags.evaluator import ConfigDetails, Evaluator
from src.flags.models import Flag, VariationType
from src.flags.sharder import DeterministicSharder

CONFIG_DETAILS = ConfigDetails(
    config_fetched_at="2024-06-01T12:00:00+00:00",
    config_published_at="2024-06-01T11:00:00+00:00",
    environment_name="Test",
)

LAUNCH = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _split(variation_key, start=0, end=10_000, salt="traffic", extra_logging=None):
    split = {
        "variationKey": variation_key,
        "shards": [{"salt": salt, "ranges": [{"start": start, "end": end}]}],
    }
    if extra_logging is not None:
        split["extraLogging"] = extra_logging
    return split


def _allocation(key, splits, rules=None, **extra):
    return {"key": key, "rules": rules or [], "splits": splits, **extra}


def _rule(attribute, operator, value):
    return {"conditions": [{"attribute": attribute, "operator": operator, "value": value}]}


def _flag(allocations, enabled=True, variations=None, variation_type="STRING"):
    return Flag.model_validate({
        "key": "new-checkout",
        "enabled": enabled,
        "variationType": variation_type,
        "variations": variations or {
            "control": {"key": "control", "value": "control"},
            "treatment": {"key": "treatment", "value": "treatment"},
        },
        "allocations": allocations,
        "totalShards": 10_000,
    })


def _keys(allocation_evaluations):
    return [
        (a.key, a.allocation_evaluation_code, a.order_position)
        for a in allocation_evaluations
    ]


class TestMatching:
    def test_single_rollout_matches(self):
        flag = _flag([_allocation("rollout", [_split("treatment")])])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})

        assert result.variation.key == "treatment"
        assert result.allocation_key == "rollout"
        assert result.do_log is True
        details = result.flag_evaluation_details
        assert details.flag_evaluation_code is FlagEvaluationCode.MATCH
        assert details.flag_evaluation_description == (
            'alice belongs to the range of traffic assigned to "treatment" '
            'defined in allocation "rollout".'
        )
        assert details.variation_key == "treatment"
        assert details.variation_value == "treatment"
        assert details.environment_name == "Test"
        assert details.config_fetched_at == CONFIG_DETAILS.config_fetched_at
        assert details.config_published_at == CONFIG_DETAILS.config_published_at
        assert details.matched_allocation.order_position == 1
        assert details.matched_rule is None

    def test_splits_by_shard(self):
        sharder = DeterministicSharder({"traffic-alice": 1000, "traffic-bob": 7000})
        flag = _flag([_allocation("experiment", [
            _split("control", 0, 5000),
            _split("treatment", 5000, 10_000),
        ])])
        evaluator = Evaluator(sharder)
        assert evaluator.evaluate_flag(flag, CONFIG_DETAILS, "alice", {}).variation.key == "control"
        assert evaluator.evaluate_flag(flag, CONFIG_DETAILS, "bob", {}).variation.key == "treatment"

    def test_deterministic_with_md5(self):
        flag = _flag([_allocation("experiment", [
            _split("control", 0, 5000),
            _split("treatment", 5000, 10_000),
        ])])
        evaluator = Evaluator()
        first = evaluator.evaluate_flag(flag, CONFIG_DETAILS, "user_001", {})
        second = evaluator.evaluate_flag(flag, CONFIG_DETAILS, "user_001", {})
        assert first.variation == second.variation

    def test_md5_bucket_decides_split(self):
        # md5("traffic-bob") lands in shard 7062
        flag = _flag([_allocation("experiment", [
            _split("control", 0, 7062),
            _split("treatment", 7062, 10_000),
        ])])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "bob", {})
        assert result.variation.key == "treatment"

    def test_all_shards_of_split_must_match(self):
        sharder = DeterministicSharder({"a-alice": 10, "b-alice": 90})
        split = {
            "variationKey": "treatment",
            "shards": [
                {"salt": "a", "ranges": [{"start": 0, "end": 50}]},
                {"salt": "b", "ranges": [{"start": 0, "end": 50}]},
            ],
        }
        flag = _flag([_allocation("partial", [split])])
        result = Evaluator(sharder).evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.variation is None

    def test_extra_logging_and_do_log(self):
        flag = _flag([_allocation(
            "rollout",
            [_split("treatment", extra_logging={"holdout": "q3"})],
            doLog=False,
        )])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.extra_logging == {"holdout": "q3"}
        assert result.do_log is False

    def test_subject_key_is_id_attribute(self):
        flag = _flag([_allocation(
            "internal", [_split("treatment")], rules=[_rule("id", "ONE_OF", ["alice"])]
        )])
        evaluator = Evaluator()
        assert evaluator.evaluate_flag(flag, CONFIG_DETAILS, "alice", {}).variation.key == "treatment"
        assert evaluator.evaluate_flag(flag, CONFIG_DETAILS, "bob", {}).variation is None


class TestPrecedence:
    def test_first_matching_allocation_wins(self):
        flag = _flag([
            _allocation("canada", [_split("control")], rules=[_rule("country", "ONE_OF", ["CA"])]),
            _allocation("us", [_split("treatment")], rules=[_rule("country", "ONE_OF", ["US"])]),
            _allocation("everyone", [_split("control")]),
        ])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {"country": "US"})
        details = result.flag_evaluation_details

        assert result.variation.key == "treatment"
        assert _keys(details.unmatched_allocations) == [
            ("canada", AllocationEvaluationCode.FAILING_RULE, 1),
        ]
        assert _keys([details.matched_allocation]) == [
            ("us", AllocationEvaluationCode.MATCH, 2),
        ]
        assert _keys(details.unevaluated_allocations) == [
            ("everyone", AllocationEvaluationCode.UNEVALUATED, 3),
        ]
        assert details.matched_rule == flag.allocations[1].rules[0]
        assert details.flag_evaluation_description == (
            'Supplied attributes match rules defined in allocation "us".'
        )

    def test_rules_with_partial_rollout_description(self):
        flag = _flag([_allocation(
            "us-experiment",
            [_split("control", 0, 5000), _split("treatment", 5000, 10_000)],
            rules=[_rule("country", "ONE_OF", ["US"])],
        )])
        sharder = DeterministicSharder({"traffic-alice": 100})
        result = Evaluator(sharder).evaluate_flag(flag, CONFIG_DETAILS, "alice", {"country": "US"})
        assert result.flag_evaluation_details.flag_evaluation_description == (
            'Supplied attributes match rules defined in allocation "us-experiment" '
            'and alice belongs to the range of traffic assigned to "control".'
        )

    def test_traffic_exposure_miss_falls_through(self):
        sharder = DeterministicSharder({"traffic-bob": 7000})
        flag = _flag([
            _allocation("small-rollout", [_split("treatment", 0, 5000)]),
            _allocation("everyone", [_split("control")]),
        ])
        result = Evaluator(sharder).evaluate_flag(flag, CONFIG_DETAILS, "bob", {})
        details = result.flag_evaluation_details

        assert result.variation.key == "control"
        assert _keys(details.unmatched_allocations) == [
            ("small-rollout", AllocationEvaluationCode.TRAFFIC_EXPOSURE_MISS, 1),
        ]
        assert details.unevaluated_allocations == []

    def test_empty_ranges_never_match(self):
        flag = _flag([_allocation("closed", [_split("treatment", 0, 0)])])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.variation is None
        assert _keys(result.flag_evaluation_details.unmatched_allocations) == [
            ("closed", AllocationEvaluationCode.TRAFFIC_EXPOSURE_MISS, 1),
        ]

    def test_no_allocations_match(self):
        flag = _flag([
            _allocation("canada", [_split("control")], rules=[_rule("country", "ONE_OF", ["CA"])]),
        ])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {"country": "US"})
        details = result.flag_evaluation_details

        assert result.variation is None
        assert result.allocation_key is None
        assert result.do_log is False
        assert details.flag_evaluation_code is FlagEvaluationCode.DEFAULT_ALLOCATION_NULL
        assert details.flag_evaluation_description == (
            'No allocations matched. Falling back to "Default Allocation", serving NULL'
        )
        assert details.matched_allocation is None
        assert details.variation_key is None
        assert details.unevaluated_allocations == []

    def test_no_allocations_at_all(self):
        result = Evaluator().evaluate_flag(_flag([]), CONFIG_DETAILS, "alice", {})
        assert result.flag_evaluation_details.flag_evaluation_code is (
            FlagEvaluationCode.DEFAULT_ALLOCATION_NULL
        )


class TestTimeWindows:
    def test_not_started(self):
        flag = _flag([
            _allocation("future", [_split("treatment")], startAt="2100-01-01T00:00:00Z"),
            _allocation("everyone", [_split("control")]),
        ])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.variation.key == "control"
        assert _keys(result.flag_evaluation_details.unmatched_allocations) == [
            ("future", AllocationEvaluationCode.BEFORE_START_TIME, 1),
        ]

    def test_ended(self):
        flag = _flag([
            _allocation("past", [_split("treatment")], endAt="2000-01-01T00:00:00Z"),
        ])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.variation is None
        assert _keys(result.flag_evaluation_details.unmatched_allocations) == [
            ("past", AllocationEvaluationCode.AFTER_END_TIME, 1),
        ]

    def test_inside_window(self):
        flag = _flag([_allocation(
            "now",
            [_split("treatment")],
            startAt="2000-01-01T00:00:00Z",
            endAt="2100-01-01T00:00:00Z",
        )])
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.variation.key == "treatment"

    def test_starts_at_start_time(self):
        flag = _flag([_allocation(
            "launch", [_split("treatment")], startAt="2024-06-01T12:00:00Z",
        )])
        result = Evaluator(clock=lambda: LAUNCH).evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.variation.key == "treatment"

    def test_ends_at_end_time(self):
        flag = _flag([_allocation(
            "launch", [_split("treatment")], endAt="2024-06-01T12:00:00Z",
        )])
        result = Evaluator(clock=lambda: LAUNCH).evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        assert result.variation is None
        assert _keys(result.flag_evaluation_details.unmatched_allocations) == [
            ("launch", AllocationEvaluationCode.AFTER_END_TIME, 1),
        ]

    def test_clock_read_once_per_evaluation(self):
        readings = []

        def clock():
            readings.append(None)
            return LAUNCH if len(readings) == 1 else LAUNCH + timedelta(days=1)

        flag = _flag([
            _allocation(
                "canada",
                [_split("treatment")],
                rules=[_rule("country", "ONE_OF", ["CA"])],
                startAt="2024-06-01T11:00:00Z",
                endAt="2024-06-01T13:00:00Z",
            ),
            _allocation("later", [_split("treatment")], startAt="2024-06-01T13:00:00Z"),
            _allocation("everyone", [_split("control")]),
        ])
        result = Evaluator(clock=clock).evaluate_flag(flag, CONFIG_DETAILS, "alice", {"country": "US"})

        assert len(readings) == 1
        assert result.variation.key == "control"
        assert _keys(result.flag_evaluation_details.unmatched_allocations) == [
            ("canada", AllocationEvaluationCode.FAILING_RULE, 1),
            ("later", AllocationEvaluationCode.BEFORE_START_TIME, 2),
        ]

    def test_naive_timestamps_are_utc(self):
        flag = _flag([_allocation("past", [_split("treatment")], endAt="2000-01-01T00:00:00")])
        assert flag.allocations[0].end_at.tzinfo is not None


class TestDisabledAndErrors:
    def test_disabled_flag(self):
        flag = _flag(
            [_allocation("a1", [_split("control")]), _allocation("a2", [_split("treatment")])],
            enabled=False,
        )
        result = Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        details = result.flag_evaluation_details

        assert result.variation is None
        assert details.flag_evaluation_code is FlagEvaluationCode.FLAG_UNRECOGNIZED_OR_DISABLED
        assert details.flag_evaluation_description == (
            "Unrecognized or disabled flag: new-checkout"
        )
        assert _keys(details.unevaluated_allocations) == [
            ("a1", AllocationEvaluationCode.UNEVALUATED, 1),
            ("a2", AllocationEvaluationCode.UNEVALUATED, 2),
        ]

    def test_incompatible_variation_value(self):
        flag = _flag([_allocation("rollout", [_split("treatment")])])
        result = Evaluator().evaluate_flag(
            flag, CONFIG_DETAILS, "alice", {}, expected_variation_type=VariationType.INTEGER
        )
        details = result.flag_evaluation_details
        assert details.flag_evaluation_code is FlagEvaluationCode.ASSIGNMENT_ERROR
        assert details.flag_evaluation_description == (
            "Variation (treatment) is configured for type INTEGER, "
            "but is set to incompatible value (treatment)"
        )

    def test_integral_float_is_an_integer(self):
        flag = _flag(
            [_allocation("rollout", [_split("three")])],
            variations={"three": {"key": "three", "value": 3.0}},
            variation_type="INTEGER",
        )
        result = Evaluator().evaluate_flag(
            flag, CONFIG_DETAILS, "alice", {}, expected_variation_type=VariationType.INTEGER
        )
        assert result.flag_evaluation_details.flag_evaluation_code is FlagEvaluationCode.MATCH

    def test_unknown_variation_raises_with_details(self):
        flag = _flag([
            _allocation("canada", [_split("control")], rules=[_rule("country", "ONE_OF", ["CA"])]),
            _allocation("broken", [_split("missing")]),
        ])
        with pytest.raises(FlagEvaluationError) as exc_info:
            Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {})
        details = exc_info.value.flag_evaluation_details
        assert details.flag_evaluation_code is FlagEvaluationCode.ASSIGNMENT_ERROR
        assert details.flag_evaluation_description.startswith("Assignment Error:")
        assert _keys(details.unmatched_allocations) == [
            ("canada", AllocationEvaluationCode.FAILING_RULE, 1),
        ]

    def test_invalid_regex_raises(self):
        flag = _flag([_allocation(
            "regex", [_split("treatment")], rules=[_rule("email", "MATCHES", "(")]
        )])
        with pytest.raises(FlagEvaluationError):
            Evaluator().evaluate_flag(flag, CONFIG_DETAILS, "alice", {"email": "a@b.c"})
