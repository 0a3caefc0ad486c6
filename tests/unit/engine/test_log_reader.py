"""Unit tests for ExecutionLogReader."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from pipecheck.engine.log_reader import ExecutionLogReader
from pipecheck.models.records import TimeWindow, utcnow
from pipecheck.models.resources import ResourceHandle, ResourceKind
from tests.fakes import MemoryAwsProvider


@pytest.fixture
def provider():
    fake = MemoryAwsProvider()
    fake.add_function("ingest")
    fake.add_bucket("uploads")
    return fake


@pytest.fixture
def reader(provider):
    return ExecutionLogReader(provider)


@pytest.fixture
def function(provider):
    return ResourceHandle(kind=ResourceKind.FUNCTION, name="ingest",
                          resolved_identifier=provider.find_resource(ResourceKind.FUNCTION, "ingest"))


def recent(minutes=5):
    return TimeWindow.last(minutes=minutes)


class TestRead:
    def test_records_sorted_by_start_time(self, reader, provider, function):
        now = utcnow()
        provider.record_invocation("ingest", "second", start=now - timedelta(seconds=10))
        provider.record_invocation("ingest", "first", start=now - timedelta(seconds=20))
        window = recent()
        records = asyncio.run(reader.read(function, window.start, window.end))
        assert [r.raw_payload for r in records] == ["first", "second"]

    def test_records_outside_window_excluded(self, reader, provider, function):
        provider.record_invocation("ingest", "old", start=utcnow() - timedelta(hours=1))
        provider.record_invocation("ingest", "new")
        window = recent()
        records = asyncio.run(reader.read(function, window.start, window.end))
        assert [r.raw_payload for r in records] == ["new"]

    def test_bucket_is_not_readable(self, reader, provider):
        bucket = ResourceHandle(kind=ResourceKind.BUCKET, name="uploads", resolved_identifier="uploads")
        window = recent()
        with pytest.raises(ValueError):
            asyncio.run(reader.read(bucket, window.start, window.end))

    def test_inverted_window_rejected(self, reader, function):
        now = utcnow()
        with pytest.raises(ValueError):
            asyncio.run(reader.read(function, now, now - timedelta(minutes=1)))


class TestContainsAny:
    def test_matching_lines_returned(self, reader, provider, function):
        provider.record_invocation("ingest", "START\nProcessed 4 records\nEND")
        result = asyncio.run(reader.contains_any(function, recent(), ["Processed", "Skipped"]))
        assert result.found is True
        assert result.matches == ["Processed 4 records"]

    def test_no_match_returns_empty(self, reader, provider, function):
        provider.record_invocation("ingest", "START\nall good\nEND")
        result = asyncio.run(reader.contains_any(function, recent(), ["Exception"]))
        assert result.found is False
        assert result.matches == []

    def test_matching_is_case_sensitive(self, reader, provider, function):
        provider.record_invocation("ingest", "error: lower case")
        result = asyncio.run(reader.contains_any(function, recent(), ["ERROR"]))
        assert result.found is False

    def test_no_records_is_not_found(self, reader, function):
        result = asyncio.run(reader.contains_any(function, recent(), ["anything"]))
        assert result.found is False


class TestCheckErrors:
    def test_counts_error_lines(self, reader, provider, function):
        provider.record_invocation("ingest", "ok\n[ERROR] bad row\nTraceback (most recent call last):")
        summary = asyncio.run(reader.check_errors(function, recent()))
        assert summary.has_errors is True
        assert summary.error_count == 2

    def test_clean_logs(self, reader, provider, function):
        provider.record_invocation("ingest", "INFO processed")
        summary = asyncio.run(reader.check_errors(function, recent()))
        assert summary.has_errors is False
        assert summary.lines == []
