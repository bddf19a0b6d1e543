"""
Tests for knowledge_daemon.freshness.pattern_checker
"""

from __future__ import annotations

import os

import pytest

from knowledge_daemon.freshness import (
    PatternFreshnessChecker,
    StaticPatternSource,
    YamlPatternSource,
)
from knowledge_daemon.freshness.pattern_checker import CURRENT, MISSING, NEW
from knowledge_daemon.store import CodePattern, KnowledgeStore


@pytest.fixture
def store(tmp_path):
    s = KnowledgeStore(str(tmp_path / "k.db"))
    s.upsert_code_pattern(CodePattern(pattern_name="PATTERN_RBAC",
                                      pattern_type="security",
                                      description="Check roles in middleware",
                                      related_files=["src/middleware/rbac.ts"]))
    s.upsert_code_pattern(CodePattern(pattern_name="PATTERN_LEGACY"))
    return s


def _checker(store, declared) -> PatternFreshnessChecker:
    return PatternFreshnessChecker(store, StaticPatternSource(declared))


class TestCheck:

    def test_three_way_classification(self, store):
        report = _checker(store, ["PATTERN_RBAC", "PATTERN_NEW"]).check()
        statuses = {p.pattern_name: p.status for p in report.patterns}
        assert statuses == {"PATTERN_RBAC": CURRENT, "PATTERN_NEW": NEW,
                            "PATTERN_LEGACY": MISSING}
        assert (report.total, report.current, report.new, report.missing) == (3, 1, 1, 1)

    def test_sorted_by_name(self, store):
        report = _checker(store, ["PATTERN_ZED", "PATTERN_ALPHA"]).check()
        names = [p.pattern_name for p in report.patterns]
        assert names == sorted(names)

    def test_each_name_once(self, store):
        report = _checker(store, ["PATTERN_RBAC", "PATTERN_LEGACY"]).check()
        assert len(report.patterns) == 2
        assert report.missing == 0

    def test_empty_reference_marks_everything_missing(self, store):
        report = _checker(store, []).check()
        assert report.missing == 2
        assert report.current == 0

    def test_check_is_read_only(self, store):
        before = [(p.pattern_name, p.usage_count, p.updated_at)
                  for p in store.list_code_patterns()]
        stats_before = store.stats().to_dict()
        checker = _checker(store, ["PATTERN_RBAC", "PATTERN_NEW"])
        checker.check()
        checker.summary()
        checker.needing_attention()
        after = [(p.pattern_name, p.usage_count, p.updated_at)
                 for p in store.list_code_patterns()]
        assert after == before
        assert store.stats().to_dict() == stats_before

    def test_stored_fields_reported(self, store):
        report = _checker(store, ["PATTERN_RBAC"]).check()
        rbac = next(p for p in report.patterns if p.pattern_name == "PATTERN_RBAC")
        assert rbac.in_store and rbac.in_reference
        assert rbac.usage_count == 1
        assert rbac.updated_at


class TestDrift:

    def test_matching_fields_not_drifted(self, store):
        report = _checker(store, {"PATTERN_RBAC": {
            "description": "Check roles in middleware", "pattern_type": "security"}}).check()
        assert report.updated == 0

    def test_differing_description_is_drift(self, store):
        report = _checker(store, {"PATTERN_RBAC": {"description": "Use policy objects"}}).check()
        rbac = next(p for p in report.patterns if p.pattern_name == "PATTERN_RBAC")
        assert rbac.status == CURRENT
        assert rbac.drifted
        assert rbac.differences["description"] == {
            "declared": "Use policy objects", "stored": "Check roles in middleware"}
        assert report.updated == 1

    def test_missing_related_files(self, store):
        report = _checker(store, {"PATTERN_RBAC": {
            "related_files": ["src/middleware/rbac.ts", "src/guards/role.ts"]}}).check()
        rbac = next(p for p in report.patterns if p.pattern_name == "PATTERN_RBAC")
        assert rbac.differences == {"related_files": {"missing": ["src/guards/role.ts"]}}


class TestSummary:

    def test_message(self, store):
        summary = _checker(store, ["PATTERN_RBAC", "PATTERN_NEW"]).summary()
        assert summary["message"] == (
            "Pattern Status: 1/3 current, 2 need attention (1 new) (1 missing)")
        assert summary["new_patterns"] == ["PATTERN_NEW"]
        assert summary["missing_patterns"] == ["PATTERN_LEGACY"]

    def test_all_current(self, store):
        summary = _checker(store, ["PATTERN_RBAC", "PATTERN_LEGACY"]).summary()
        assert summary["message"] == "Pattern Status: 2/2 current"
        assert summary["needs_attention"] == 0

    def test_needing_attention(self, store):
        checker = _checker(store, {"PATTERN_RBAC": {"description": "other"},
                                   "PATTERN_NEW": {}})
        names = [p.pattern_name for p in checker.needing_attention()]
        assert names == ["PATTERN_LEGACY", "PATTERN_NEW", "PATTERN_RBAC"]

    def test_report_to_dict(self, store):
        data = _checker(store, ["PATTERN_RBAC"]).check().to_dict()
        assert data["total_patterns"] == 2
        assert data["last_check"]
        assert {p["status"] for p in data["patterns"]} == {CURRENT, MISSING}


class TestYamlPatternSource:

    def test_list_layout(self, tmp_path):
        path = tmp_path / "patterns.yaml"
        path.write_text(
            "patterns:\n"
            "  - PATTERN_RBAC\n"
            "  - name: PATTERN_DATABASE\n"
            "    description: Use the repository layer\n",
            encoding="utf-8",
        )
        loaded = YamlPatternSource(str(path)).load()
        assert loaded == {"PATTERN_RBAC": {},
                          "PATTERN_DATABASE": {"description": "Use the repository layer"}}

    def test_mapping_layout(self, tmp_path):
        path = tmp_path / "patterns.yml"
        path.write_text("PATTERN_RBAC:\n  pattern_type: security\n", encoding="utf-8")
        assert YamlPatternSource(str(path)).load() == {
            "PATTERN_RBAC": {"pattern_type": "security"}}

    def test_missing_file(self, tmp_path):
        assert YamlPatternSource(str(tmp_path / "absent.yaml")).load() == {}
        assert YamlPatternSource("").load() == {}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("patterns: [unclosed\n", encoding="utf-8")
        assert YamlPatternSource(str(path)).load() == {}
        assert os.path.isfile(path)
