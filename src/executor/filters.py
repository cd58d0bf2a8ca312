"""Filter evaluation between stages.

After a stage completes, its filter rule narrows the image set handed to
the next stage. Filtering only ever removes images: the output keeps the
input's relative order and never contains an image absent from the input.

Unknown rule strings fail open to FilterRule.NONE with a warning.
"""

import logging
from typing import Iterable, Optional, Union

from src.executor.schemas import FilterRule, ImageRef, ProcessingResult

logger = logging.getLogger(__name__)


def parse_filter_rule(raw: Union[str, FilterRule, None]) -> FilterRule:
    """Map a raw rule string to a FilterRule. Unknown or empty → NONE."""
    if isinstance(raw, FilterRule):
        return raw
    if raw is None:
        return FilterRule.NONE

    value = str(raw).strip().lower()
    if not value:
        return FilterRule.NONE
    try:
        return FilterRule(value)
    except ValueError:
        logger.warning(f"Unknown filter rule '{raw}', passing all images through")
        return FilterRule.NONE


def _keeps(result: Optional[ProcessingResult], rule: FilterRule) -> bool:
    if result is None:
        return False
    if rule == FilterRule.SUCCESS_ONLY:
        return result.success
    if rule == FilterRule.TRUE_ONLY:
        return result.success and result.response.strip().lower() == "true"
    if rule == FilterRule.FALSE_ONLY:
        return result.success and result.response.strip().lower() == "false"
    return True


def apply_filter(
    images: list[ImageRef],
    results: Iterable[ProcessingResult],
    rule: Union[str, FilterRule, None],
) -> list[ImageRef]:
    """Compute the image set for the next stage.

    Args:
        images: Image set that completed the stage, in input order.
        results: That stage's results (any order).
        rule: The stage's filter rule (raw or parsed).

    Returns:
        A new list; a subsequence of `images`. Images with no result for
        this stage are dropped by every rule except NONE.
    """
    parsed = parse_filter_rule(rule)
    if parsed == FilterRule.NONE:
        return list(images)

    by_image = {r.image_id: r for r in results}
    kept = [img for img in images if _keeps(by_image.get(img.image_id), parsed)]

    logger.info(
        f"Filter {parsed.value}: {len(kept)}/{len(images)} images pass to next stage"
    )
    return kept
