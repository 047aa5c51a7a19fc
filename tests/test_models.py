"""Tests for sysmon_json.models module."""

import copy
from pathlib import Path
from unittest.mock import patch

import pytest

from sysmon_json.models import (
    MEGABYTE,
    BatchReport,
    DocumentFormat,
    Element,
    JobDescriptor,
    JobResult,
    JobStatus,
    ProcessingOptions,
    SkippedFile,
    Text,
    child_labels,
    fingerprint,
)


def _job(index=0):
    return JobDescriptor(
        index=index,
        source=Path(f"in{index}.xml"),
        destination=Path(f"out{index}.json"),
        source_format=DocumentFormat.XML,
        target_format=DocumentFormat.JSON
    )


class TestElement:
    """Tests for Element and Text."""

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            Element("")

    def test_defaults_are_independent(self):
        a = Element("a")
        b = Element("b")
        a.attributes["x"] = "1"
        a.children.append(Text("t"))
        assert b.attributes == {}
        assert b.children == []

    def test_text_joins_leaves(self):
        element = Element("a", {}, [Text("one "), Element("b"), Text("two")])
        assert element.text == "one two"

    def test_elements_skips_text(self):
        b = Element("b")
        element = Element("a", {}, [Text("x"), b])
        assert element.elements() == [b]

    def test_equality_ignores_attribute_order(self):
        left = Element("a", {"x": "1", "y": "2"})
        right = Element("a", {"y": "2", "x": "1"})
        assert left == right

    def test_equality_respects_child_order(self):
        left = Element("a", {}, [Element("b"), Element("c")])
        right = Element("a", {}, [Element("c"), Element("b")])
        assert left != right


class TestDocumentFormat:
    """Tests for DocumentFormat."""

    def test_from_path(self):
        assert DocumentFormat.from_path(Path("a.xml")) is DocumentFormat.XML
        assert DocumentFormat.from_path(Path("a.JSON")) is DocumentFormat.JSON
        assert DocumentFormat.from_path(Path("a.txt")) is None
        assert DocumentFormat.from_path(Path("noext")) is None

    def test_other_and_extension(self):
        assert DocumentFormat.XML.other is DocumentFormat.JSON
        assert DocumentFormat.JSON.other is DocumentFormat.XML
        assert DocumentFormat.JSON.extension == ".json"


class TestChildLabels:
    """Tests for child_labels function."""

    def test_labels_index_repeated_tags_only(self):
        children = [Element("A"), Text("x"), Element("B"), Element("A")]
        assert child_labels(children) == ["A[1]", None, "B", "A[2]"]

    def test_empty(self):
        assert child_labels([]) == []


class TestFingerprint:
    """Tests for fingerprint function."""

    def test_fingerprint_is_xxh64_hex(self, sample_document):
        digest = fingerprint(sample_document.root)
        assert isinstance(digest, str)
        assert len(digest) == 16

    def test_fingerprint_deterministic(self, sample_document):
        clone = copy.deepcopy(sample_document.root)
        assert fingerprint(sample_document.root) == fingerprint(clone)

    def test_attribute_order_ignored(self):
        left = Element("a", {"x": "1", "y": "2"})
        right = Element("a", {"y": "2", "x": "1"})
        assert fingerprint(left) == fingerprint(right)

    def test_text_changes_fingerprint(self):
        assert fingerprint(Element("a", {}, [Text("1")])) != fingerprint(Element("a", {}, [Text("2")]))

    def test_values_do_not_run_together(self):
        left = Element("a", {"xy": "z"})
        right = Element("a", {"x": "yz"})
        assert fingerprint(left) != fingerprint(right)


class TestProcessingOptions:
    """Tests for ProcessingOptions."""

    def test_defaults(self):
        options = ProcessingOptions()
        assert options.max_file_size == 10 * MEGABYTE
        assert options.max_depth == 10
        assert options.ignore_patterns == ()

    def test_effective_depth(self):
        assert ProcessingOptions(max_depth=7, recursive=True).effective_depth == 7
        assert ProcessingOptions(max_depth=7).effective_depth == 1

    def test_worker_count_defaults_to_cpu_count(self):
        with patch("sysmon_json.models.os.cpu_count", return_value=3):
            assert ProcessingOptions().worker_count == 3
        assert ProcessingOptions(workers=5).worker_count == 5

    def test_worker_count_without_cpu_count(self):
        with patch("sysmon_json.models.os.cpu_count", return_value=None):
            assert ProcessingOptions().worker_count == 1


class TestBatchReport:
    """Tests for BatchReport."""

    def test_counts_and_exit_code(self):
        report = BatchReport(
            discovered=3,
            results=[
                JobResult(_job(0), JobStatus.SUCCESS),
                JobResult(_job(1), JobStatus.FAILED, "boom"),
                JobResult(_job(2), JobStatus.SKIPPED, "cancelled"),
            ],
            skipped_files=[SkippedFile(Path("big.xml"), "big.xml", "too large")]
        )
        assert report.success_count == 1
        assert report.failure_count == 1
        assert report.skipped_count == 2
        assert [r.job.index for r in report.failures] == [1]
        assert report.exit_code == 1

    def test_empty_report_succeeds(self):
        report = BatchReport(discovered=0)
        assert report.exit_code == 0
