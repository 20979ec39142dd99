"""
Mask validation rules for removalmask.

Checks a refined mask before it is handed to the inpainting provider.
"""

import numpy as np

from removalmask.models import CheckResult, Severity, ValidationReport, expand_bbox, is_binary, mask_bbox
from removalmask.tracer import get_tracer, trace


@trace(label="run_mask_validation")
def run_mask_validation(mask, width, height, rough_mask=None, margin=5):
    """
    Run all mask checks.

    Returns ValidationReport with all check results.
    """
    tracer = get_tracer()

    checks = [check_dimensions(mask, width, height)]

    # value checks are meaningless on a wrongly shaped buffer
    if checks[0].passed:
        checks.append(check_binary(mask))
        checks.append(check_non_empty(mask))
        if rough_mask is not None:
            checks.append(check_within_intent(mask, rough_mask, margin))

    report = ValidationReport(checks=checks)
    tracer.event(f"Validation complete: {report.error_count} errors, {report.warning_count} warnings")

    return report


def check_dimensions(mask, width, height):
    """Check that the mask is a 2-D array of exactly the image size."""
    shape = tuple(np.shape(mask))
    passed = len(shape) == 2 and shape == (height, width)

    return CheckResult(
        rule_id="dimensions",
        severity=Severity.ERROR,
        passed=passed,
        message="Mask matches image size" if passed else f"Mask shape {shape} does not match {width}x{height}",
        evidence={"shape": list(shape), "expected": [height, width]},
    )


def check_binary(mask):
    """Check that the mask only holds 0 and 1."""
    passed = is_binary(mask)
    evidence = {}
    if not passed:
        evidence["values"] = [int(v) for v in np.unique(mask)[:10]]

    return CheckResult(
        rule_id="binary",
        severity=Severity.ERROR,
        passed=passed,
        message="Mask is binary" if passed else "Mask contains values other than 0 and 1",
        evidence=evidence,
    )


def check_non_empty(mask):
    """Warn when the mask marks nothing for removal."""
    count = int(np.count_nonzero(mask))

    return CheckResult(
        rule_id="non_empty",
        severity=Severity.WARN,
        passed=count > 0,
        message=f"Mask marks {count} pixels" if count else "Mask is empty",
        evidence={"foreground": count},
    )


def check_within_intent(mask, rough_mask, margin):
    """Warn when refined foreground leaves the rough mask's expanded bbox."""
    bbox = mask_bbox(rough_mask)
    if bbox is None:
        outside = int(np.count_nonzero(mask))
    else:
        height, width = rough_mask.shape
        box = expand_bbox(bbox, margin, width, height)
        inside = np.zeros(mask.shape, dtype=bool)
        inside[box.min_y:box.max_y + 1, box.min_x:box.max_x + 1] = True
        outside = int(np.count_nonzero((mask > 0) & ~inside))

    return CheckResult(
        rule_id="within_intent",
        severity=Severity.WARN,
        passed=outside == 0,
        message="Mask stays inside the marked region" if outside == 0 else f"{outside} pixels outside the marked region",
        evidence={"outside_pixels": outside},
    )
