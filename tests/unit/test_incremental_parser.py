#!/usr/bin/env python3
"""
Tests for IncrementalRecordParser: findings surfaced from a partially
arrived JSON document.
"""

import json
import sys
from pathlib import Path

import pytest

# Ensure scripts directory is on the path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "scripts"))

from incremental_parser import IncrementalRecordParser
from schemas.pipeline import Severity


def make_record(title, severity="high", **extra):
    record = {
        "category": "injection",
        "severity": severity,
        "title": title,
        "description": f"{title} description.",
    }
    record.update(extra)
    return record


def document(*records):
    return json.dumps({"vulnerabilities": list(records)}, indent=2)


class TestIncrementalEmission:
    def test_character_by_character_yields_elements_in_order(self):
        records = [make_record(f"Issue {i}") for i in range(5)]
        text = document(*records)
        parser = IncrementalRecordParser()

        emitted = []
        counts = []
        for char in text:
            emitted.extend(parser.feed(char))
            counts.append(parser.parsed_count())

        assert [f.title for f in emitted] == [r["title"] for r in records]
        assert counts == sorted(counts)
        assert parser.parsed_count() == 5

    def test_record_emitted_as_soon_as_object_closes(self):
        parser = IncrementalRecordParser()
        head = '{"vulnerabilities": [' + json.dumps(make_record("First"))
        assert [f.title for f in parser.feed(head)] == ["First"]
        assert parser.feed(', {"title": "Sec') == []
        assert parser.parsed_count() == 1

    def test_whole_document_in_one_delta(self):
        parser = IncrementalRecordParser()
        emitted = parser.feed(document(make_record("A"), make_record("B")))
        assert [f.title for f in emitted] == ["A", "B"]

    def test_empty_array(self):
        parser = IncrementalRecordParser()
        assert parser.feed('{"vulnerabilities": []}') == []
        assert parser.parsed_count() == 0

    def test_text_accumulates_all_deltas(self):
        parser = IncrementalRecordParser()
        parser.feed('{"vulner')
        parser.feed('abilities": []}')
        assert parser.text == '{"vulnerabilities": []}'

    def test_legacy_field_names(self):
        parser = IncrementalRecordParser()
        raw = {"level": "CRITICAL", "title": "T", "description": "D", "filePath": "/a.ts"}
        [finding] = parser.feed(json.dumps({"vulnerabilities": [raw]}))
        assert finding.severity is Severity.CRITICAL
        assert finding.file_path == "/a.ts"
        assert finding.category == "unknown"


class TestStringHandling:
    def test_braces_inside_strings(self):
        record = make_record("Template {injection}", description="Uses } and { and [ ] freely.")
        parser = IncrementalRecordParser()
        emitted = []
        for char in document(record, make_record("Next")):
            emitted.extend(parser.feed(char))
        assert [f.title for f in emitted] == ["Template {injection}", "Next"]
        assert emitted[0].description == "Uses } and { and [ ] freely."

    def test_escaped_quotes_and_backslashes(self):
        record = make_record(
            'Quote \\" breaker',
            description='Path C:\\\\temp\\\\ and "quoted {text}" end.',
        )
        text = document(record)
        parser = IncrementalRecordParser()
        emitted = []
        for char in text:
            emitted.extend(parser.feed(char))
        assert len(emitted) == 1
        assert emitted[0].title == record["title"]
        assert emitted[0].description == record["description"]

    @pytest.mark.parametrize("split", range(1, 40))
    def test_delta_boundary_mid_string_or_escape(self, split):
        text = '{"vulnerabilities": [{"title": "a\\"b}", "description": "x", "severity": "low"}]}'
        parser = IncrementalRecordParser()
        emitted = parser.feed(text[:split]) + parser.feed(text[split:])
        assert [f.title for f in emitted] == ['a"b}']


class TestMalformedElements:
    def test_schema_invalid_element_skipped(self):
        bad = {"severity": "high", "title": "", "description": "no title"}
        parser = IncrementalRecordParser()
        emitted = parser.feed(document(make_record("Good 1"), bad, make_record("Good 2")))
        assert [f.title for f in emitted] == ["Good 1", "Good 2"]
        assert parser.parsed_count() == 2
        assert parser.skipped_count == 1

    def test_unknown_severity_skipped(self):
        parser = IncrementalRecordParser()
        emitted = parser.feed(document(make_record("Odd", severity="catastrophic")))
        assert emitted == []
        assert parser.skipped_count == 1

    def test_undecodable_element_skipped_and_parsing_continues(self):
        text = (
            '{"vulnerabilities": ['
            '{"title": "Broken", "description": "d", "severity": "high",,},'
            + json.dumps(make_record("After"))
            + "]}"
        )
        parser = IncrementalRecordParser()
        emitted = parser.feed(text)
        assert [f.title for f in emitted] == ["After"]
        assert parser.skipped_count == 1

    def test_skipped_slice_is_never_retried(self):
        parser = IncrementalRecordParser()
        parser.feed('{"vulnerabilities": [{"title": 1, "severity": "high"}')
        assert parser.skipped_count == 1
        parser.feed("]}")
        assert parser.skipped_count == 1
        assert parser.parsed_count() == 0


class TestTruncation:
    def test_unclosed_element_not_forced_through(self):
        parser = IncrementalRecordParser()
        parser.feed('{"vulnerabilities": [' + json.dumps(make_record("Done")) + ', {"title": "Half')
        assert parser.parsed_count() == 1
        assert parser.feed("") == []
        assert parser.parsed_count() == 1


class TestFindingsArraySelection:
    def test_other_top_level_array_is_ignored(self):
        text = json.dumps(
            {
                "reviewed": [make_record("Ghost")],
                "vulnerabilities": [make_record("Real")],
            }
        )
        parser = IncrementalRecordParser()
        emitted = []
        for char in text:
            emitted.extend(parser.feed(char))
        assert [f.title for f in emitted] == ["Real"]
        assert parser.parsed_count() == 1
        assert parser.skipped_count == 0

    def test_array_after_findings_is_ignored(self):
        text = json.dumps(
            {"vulnerabilities": [make_record("Real")], "notes": [make_record("Extra")]}
        )
        parser = IncrementalRecordParser()
        assert [f.title for f in parser.feed(text)] == ["Real"]

    def test_key_named_in_a_value_does_not_arm(self):
        text = json.dumps(
            {"summary": "vulnerabilities", "other": [make_record("Ghost")], "vulnerabilities": []}
        )
        parser = IncrementalRecordParser()
        assert parser.feed(text) == []

    def test_nested_findings_key_is_not_tracked(self):
        text = json.dumps({"result": {"vulnerabilities": [make_record("Deep")]}})
        parser = IncrementalRecordParser()
        assert parser.feed(text) == []
