"""
Tests for pipeline sinks, the Spider bundle and crawl statistics.
"""

import pytest
from tests.helpers.crawl import outcome_for
from tests.helpers.metric_delta import metric_delta
from vortex.config import Config
from vortex.exceptions import ConfigurationError
from vortex.observability.metrics import METRICS
from vortex.parser.rules import ParseRule
from vortex.protocols import FetchStatus, OutcomeKind, PipelineSink, Record, Request
from vortex.sinks import LoggingSink, MemorySink, crop
from vortex.spider import Spider
from vortex.stats import CrawlStats


class CapturingLogger:
    def __init__(self):
        self.calls = []

    def info(self, event, **kwargs):
        self.calls.append((event, kwargs))


@pytest.mark.unit
class TestSinks:
    """Built-in sinks satisfy the sink protocol."""

    @pytest.mark.asyncio
    async def test_memory_sink(self):
        sink = MemorySink()
        assert isinstance(sink, PipelineSink)
        await sink.accept(Record(fields={"a": "1"}, url="https://example.com/1"))
        await sink.accept(Record(fields={"a": "2"}, url="https://example.com/2"))
        assert len(sink) == 2
        assert [r["a"] for r in sink.by_url("https://example.com/2")] == ["2"]
        assert not sink.critical

    @pytest.mark.asyncio
    async def test_logging_sink_crops_values(self):
        logger = CapturingLogger()
        sink = LoggingSink(max_len=5, logger=logger)
        assert isinstance(sink, PipelineSink)
        await sink.accept(Record(fields={"body": "abcdefghij", "tags": ["short", "longer-tag"]}, url="https://x.test/"))

        event, payload = logger.calls[0]
        assert event == "record"
        assert payload["url"] == "https://x.test/"
        assert payload["fields"] == {"body": "abcde...", "tags": ["short", "longe..."]}
        assert sink.count == 1

    def test_crop(self):
        assert crop("abc", None) == "abc"
        assert crop({"k": ["xxxxxx"]}, 2) == {"k": ["xx..."]}
        assert crop(None, 2) is None

    def test_record_to_dict(self):
        record = Record(fields={"a": "1"}, url="https://x.test/", rule="r")
        data = record.to_dict()
        assert data["url"] == "https://x.test/"
        assert data["rule"] == "r"
        assert data["fields"] == {"a": "1"}
        assert data["fetched_at"].endswith("+00:00")


@pytest.mark.unit
class TestSpider:
    """Spider validation happens before a crawl starts."""

    def test_from_urls(self):
        spider = Spider.from_urls("s", ["https://example.com/"], [ParseRule.follow(r".")])
        assert spider.start_requests == (Request(url="https://example.com/", depth=0),)
        assert isinstance(spider.config, Config)
        spider.validate()

    @pytest.mark.parametrize(
        "name, urls, rules",
        [
            ("", ["https://example.com/"], [ParseRule.follow(r".")]),
            ("s", [], [ParseRule.follow(r".")]),
            ("s", ["example.com/no-scheme"], [ParseRule.follow(r".")]),
            ("s", ["ftp://example.com/"], [ParseRule.follow(r".")]),
            ("s", ["https://example.com/"], []),
        ],
    )
    def test_invalid_spiders(self, name, urls, rules):
        with pytest.raises(ConfigurationError):
            Spider.from_urls(name, urls, rules).validate()


@pytest.mark.unit
class TestCrawlStats:
    """Stats mirror into Prometheus as they change."""

    def test_outcomes_counted(self):
        stats = CrawlStats()
        request = Request(url="https://example.com/")
        failure = outcome_for(request, OutcomeKind.TERMINAL_FAILURE, FetchStatus.SERVER_ERROR)
        failure.attempts = 3

        counter = METRICS["fetch_outcomes"].labels(kind="terminal_failure", status="server_error")
        with metric_delta(counter, 1):
            stats.record_outcome(failure)
        stats.record_outcome(outcome_for(request))

        data = stats.to_dict()
        assert data["outcomes"] == {"terminal_failure": 1, "success": 1}
        assert data["statuses"] == {"server_error": 1, "ok": 1}
        assert data["retries"] == 2

    def test_emitted_and_failures(self):
        stats = CrawlStats()
        with metric_delta(METRICS["records_emitted"], 1), metric_delta(METRICS["sink_failures"], 1):
            stats.record_emitted()
            stats.record_sink_failure()
        with metric_delta(METRICS["requests_dispatched"], 1):
            stats.record_dispatch()
        stats.record_extraction_failure()
        assert stats.to_dict()["extraction_failures"] == 1
