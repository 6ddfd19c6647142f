"""JUnit XML report parsing."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any


class JUnitParseError(ValueError):
    """Raised when artifact content is not a readable JUnit report."""


@dataclass(frozen=True)
class TestCounts:
    __test__ = False

    total: int
    passed: int
    failed: int
    skipped: int


def is_test_artifact(name: str) -> bool:
    """Artifacts whose name mentions "test" are treated as test reports."""
    return "test" in name.lower()


def _int_attr(element: ET.Element, name: str) -> int:
    raw = element.get(name)
    if raw is None or not raw.strip():
        return 0
    try:
        return int(float(raw))
    except ValueError as exc:
        raise JUnitParseError(f"attribute {name}={raw!r} is not a number") from exc


def _suite_counts(element: ET.Element) -> tuple[int, int, int]:
    """(tests, failures + errors, skipped) for one element's own attributes."""
    tests = _int_attr(element, "tests")
    failed = _int_attr(element, "failures") + _int_attr(element, "errors")
    skipped = _int_attr(element, "skipped")
    return tests, failed, skipped


def _sum_suites(element: ET.Element) -> tuple[int, int, int]:
    # a suite carrying non-zero totals already includes its nested suites
    tests = failed = skipped = 0
    for suite in element.findall("testsuite"):
        t, f, s = _suite_counts(suite)
        if t == 0:
            t, f, s = _sum_suites(suite)
        tests += t
        failed += f
        skipped += s
    return tests, failed, skipped


def _parse_root(xml_text: str) -> ET.Element:
    try:
        return ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise JUnitParseError(f"malformed XML: {exc}") from exc


def parse_junit(xml_text: str) -> TestCounts:
    """Aggregate pass/fail/skip counts from a JUnit XML report.

    Non-zero totals on the ``<testsuites>`` wrapper win; when they are
    missing or zero the counts of every ``<testsuite>`` are summed. Errors count as failures and
    ``passed`` is clamped at zero.

    Raises :class:`JUnitParseError` for malformed XML or a document that
    is not a JUnit report.
    """
    root = _parse_root(xml_text)

    if root.tag == "testsuite":
        total, failed, skipped = _suite_counts(root)
    elif root.tag == "testsuites":
        total, failed, skipped = _suite_counts(root)
        if total == 0:
            total, failed, skipped = _sum_suites(root)
    else:
        raise JUnitParseError(f"unexpected root element <{root.tag}>")

    passed = max(total - failed - skipped, 0)
    return TestCounts(total=total, passed=passed, failed=failed, skipped=skipped)


def _case_message(element: ET.Element, default: str) -> str:
    return element.get("message") or (element.text or "").strip() or default


def _duration_ms(element: ET.Element) -> float:
    try:
        return float(element.get("time") or 0) * 1000
    except ValueError:
        return 0.0


def _collect_cases(suite: ET.Element, out: list[dict[str, Any]]) -> None:
    suite_name = suite.get("name") or suite.get("file") or "Unknown Suite"
    suite_file = suite.get("file") or suite_name

    cases = suite.findall("testcase")
    nested = suite.findall("testsuite")

    for case in cases:
        status, error = "passed", None
        failure = case.find("failure")
        err = case.find("error")
        skipped = case.find("skipped")
        if failure is not None:
            status, error = "failed", _case_message(failure, "Test failed")
        elif err is not None:
            status, error = "failed", _case_message(err, "Test error")
        elif skipped is not None:
            status, error = "skipped", _case_message(skipped, "Test skipped")
        out.append(
            {
                "name": case.get("name") or "Unknown Test",
                "suite": suite_file,
                "file": suite_file,
                "status": status,
                "duration": _duration_ms(case),
                "error": error,
            }
        )

    for child in nested:
        _collect_cases(child, out)

    # reporters that only emit suite totals get one summary entry per suite
    if not cases and not nested:
        try:
            tests, failed, skipped_count = _suite_counts(suite)
        except JUnitParseError:
            return
        if tests > 0:
            if failed > 0:
                status = "failed"
            elif skipped_count > 0:
                status = "skipped"
            else:
                status = "passed"
            out.append(
                {
                    "name": suite_name,
                    "suite": suite_file,
                    "file": suite_file,
                    "status": status,
                    "duration": _duration_ms(suite),
                    "error": f"{failed} test(s) failed in this suite" if failed else None,
                }
            )


def parse_test_cases(xml_text: str) -> list[dict[str, Any]]:
    """Per-test detail (name, suite, file, status, duration ms, error).

    Best effort: unreadable content yields an empty list.
    """
    try:
        root = _parse_root(xml_text)
    except JUnitParseError:
        return []

    if root.tag == "testsuites":
        suites = root.findall("testsuite")
    elif root.tag == "testsuite":
        suites = [root]
    else:
        return []

    cases: list[dict[str, Any]] = []
    for suite in suites:
        _collect_cases(suite, cases)
    return cases
