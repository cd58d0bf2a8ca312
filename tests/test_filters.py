"""Tests for between-stage image filtering."""

from src.executor.filters import apply_filter, parse_filter_rule
from src.executor.schemas import FilterRule, ImageRef, ProcessingResult


def _images(*ids):
    return [ImageRef(image_id=i) for i in ids]


def _result(image_id, response="", success=True):
    return ProcessingResult(
        job_id="job-1",
        stage_id="stage-1",
        stage_order=1,
        image_id=image_id,
        response=response,
        success=success,
        error=None if success else "boom",
    )


def _ids(images):
    return [img.image_id for img in images]


def test_parse_known_rules():
    assert parse_filter_rule("true_only") == FilterRule.TRUE_ONLY
    assert parse_filter_rule(" SUCCESS_ONLY ") == FilterRule.SUCCESS_ONLY
    assert parse_filter_rule(FilterRule.FALSE_ONLY) == FilterRule.FALSE_ONLY


def test_parse_unknown_rule_fails_open():
    assert parse_filter_rule("maybe_only") == FilterRule.NONE
    assert parse_filter_rule("") == FilterRule.NONE
    assert parse_filter_rule(None) == FilterRule.NONE


def test_none_is_identity_even_without_results():
    images = _images("a", "b", "c")
    out = apply_filter(images, [], "none")
    assert _ids(out) == ["a", "b", "c"]
    assert out is not images


def test_success_only():
    images = _images("a", "b", "c")
    results = [_result("a"), _result("b", success=False), _result("c")]
    assert _ids(apply_filter(images, results, "success_only")) == ["a", "c"]


def test_true_only_is_case_insensitive():
    images = _images("a", "b", "c", "d")
    results = [
        _result("a", "TRUE"),
        _result("b", "false"),
        _result("c", " True "),
        _result("d", "true", success=False),
    ]
    assert _ids(apply_filter(images, results, FilterRule.TRUE_ONLY)) == ["a", "c"]


def test_false_only():
    images = _images("a", "b", "c")
    results = [_result("a", "true"), _result("b", "False"), _result("c", "not sure")]
    assert _ids(apply_filter(images, results, "false_only")) == ["b"]


def test_unknown_rule_passes_everything_through():
    images = _images("a", "b")
    results = [_result("a", success=False), _result("b", success=False)]
    assert _ids(apply_filter(images, results, "bogus")) == ["a", "b"]


def test_image_without_result_is_dropped():
    images = _images("a", "b")
    assert _ids(apply_filter(images, [_result("a")], "success_only")) == ["a"]


def test_output_preserves_input_order_regardless_of_result_order():
    images = _images("c", "a", "b")
    results = [_result("b", "true"), _result("a", "true"), _result("c", "true")]
    assert _ids(apply_filter(images, results, "true_only")) == ["c", "a", "b"]


def test_never_introduces_images_absent_from_input():
    images = _images("a")
    results = [_result("a", "true"), _result("z", "true")]
    assert _ids(apply_filter(images, results, "true_only")) == ["a"]


def test_filter_is_idempotent():
    images = _images("a", "b", "c", "d")
    results = [
        _result("a", "true"),
        _result("b", "false"),
        _result("c", "true"),
        _result("d", "false"),
    ]
    for rule in ("none", "success_only", "true_only", "false_only"):
        once = apply_filter(images, results, rule)
        twice = apply_filter(once, results, rule)
        assert _ids(once) == _ids(twice)
