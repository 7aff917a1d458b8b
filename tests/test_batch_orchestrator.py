import pytest
from unittest.mock import AsyncMock, MagicMock
from invoice_service.core.exceptions import NormalizationError
from invoice_service.models.batch import ItemStage, ItemStatus, ProcessingStatus, STAGE_ORDER
from invoice_service.services.batch_orchestrator import BatchOrchestrator
from invoice_service.services.event_publisher import (
    BATCH_COMPLETED_TOPIC,
    JOB_COMPLETED_TOPIC,
    STATUS_TOPIC,
)
from invoice_service.services.job_registry import JobState, ProcessingJob
from invoice_service.services.normalization_service import TextNormalizationClient
from tests.fakes import (
    EventRecorder,
    FakeExtractionClient,
    FakeNormalizationClient,
    SleepRecorder,
    make_completion,
)


def build_orchestrator(publisher, registry=None, extraction=None, normalization=None):
    return BatchOrchestrator(
        extraction_client=extraction or FakeExtractionClient(),
        normalization_client=normalization or FakeNormalizationClient(),
        publisher=publisher,
        registry=registry,
        drain_timeout=0.05,
        settle_delay=0
    )


@pytest.mark.asyncio
async def test_partitions_into_sequential_batches(orchestrator, publisher):
    recorder = EventRecorder(publisher)
    result = await orchestrator.run(["a", "b", "c"], batch_size=2)
    await recorder.stop()

    assert result.total_batches == 2
    assert result.batch_size == 2
    batches = {}
    for event in recorder.topic(STATUS_TOPIC):
        batches[event.payload["fileRef"]] = event.payload["status"]["batchNumber"]
    assert batches == {"a": 1, "b": 1, "c": 2}
    assert [r.file_ref for r in result.results] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_extraction_failure_does_not_block_siblings(publisher, registry, download_error):
    extraction = FakeExtractionClient(failures={"b": download_error}, delays={"b": 0.05})
    normalization = FakeNormalizationClient()
    orchestrator = build_orchestrator(publisher, registry, extraction, normalization)

    recorder = EventRecorder(publisher)
    result = await orchestrator.run(["a", "b"], batch_size=2)
    await recorder.stop()

    assert [r.file_ref for r in result.results] == ["a"]
    assert len(result.failed_urls) == 1
    failed = result.failed_urls[0]
    assert failed.url == "b"
    assert failed.stage == ItemStage.ERROR
    assert failed.error == "Failed to download file: 404 Not Found"
    assert normalization.calls == ["text for a"]
    assert result.success is False

    transitions = [
        (e.payload["fileRef"], e.payload["status"]["stage"])
        for e in recorder.topic(STATUS_TOPIC)
    ]
    # "a" reaches analysis while "b" is still downloading
    assert transitions.index(("a", "Analyzing")) < transitions.index(("b", "Error"))


@pytest.mark.asyncio
async def test_exhausted_normalization_retries_fail_the_item(publisher, registry):
    openai_client = MagicMock()
    openai_client.chat.completions.create = AsyncMock(return_value=make_completion("not json"))
    sleeper = SleepRecorder()
    normalization = TextNormalizationClient(
        openai_client=openai_client,
        model="test-model",
        max_retries=2,
        retry_delay=1.0,
        timeout=5,
        sleep=sleeper
    )
    orchestrator = build_orchestrator(publisher, registry, normalization=normalization)

    result = await orchestrator.run(["c"], batch_size=1)

    assert result.results == []
    assert len(result.failed_urls) == 1
    assert result.failed_urls[0].url == "c"
    assert "after 3 attempts" in result.failed_urls[0].error
    assert openai_client.chat.completions.create.await_count == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_all_items_succeed_across_two_batches(orchestrator, publisher):
    refs = [f"https://files.example.com/invoice-{i}.pdf" for i in range(10)]
    recorder = EventRecorder(publisher)
    result = await orchestrator.run(refs, batch_size=5)
    await recorder.stop()

    assert len(result.results) == 10
    assert result.failed_urls == []
    assert result.success is True
    assert [r.file_ref for r in result.results] == refs
    assert [r.file_name for r in result.results][:2] == ["invoice-0.pdf", "invoice-1.pdf"]

    completions = recorder.topic(BATCH_COMPLETED_TOPIC)
    assert [e.payload["batchNumber"] for e in completions] == [1, 2]
    assert all(e.payload["totalBatches"] == 2 for e in completions)
    assert len(completions[0].payload["results"]) == 5

    job_events = recorder.topic(JOB_COMPLETED_TOPIC)
    assert len(job_events) == 1
    assert job_events[0].payload["totalProcessed"] == 10
    assert job_events[0].payload["totalFailed"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("count,batch_size", [(1, 1), (3, 2), (7, 3), (10, 10), (11, 4)])
async def test_every_input_lands_in_exactly_one_list(publisher, count, batch_size):
    refs = [f"ref-{i}" for i in range(count)]
    failures = {ref: NormalizationError("bad response") for ref in refs[::3]}
    normalization = FakeNormalizationClient(
        failures={f"text for {ref}": error for ref, error in failures.items()}
    )
    orchestrator = build_orchestrator(publisher, normalization=normalization)

    result = await orchestrator.run(refs, batch_size=batch_size)

    processed = [r.file_ref for r in result.results]
    failed = [f.url for f in result.failed_urls]
    assert len(processed) + len(failed) == count
    assert sorted(processed + failed) == sorted(refs)
    assert set(failed) == set(failures)
    assert result.total_batches == -(-count // batch_size)


@pytest.mark.asyncio
async def test_stages_only_move_forward(publisher, registry, extraction_error):
    extraction = FakeExtractionClient(failures={"b": extraction_error})
    normalization = FakeNormalizationClient(failures={"text for c": NormalizationError("invalid")})
    orchestrator = build_orchestrator(publisher, registry, extraction, normalization)

    recorder = EventRecorder(publisher)
    await orchestrator.run(["a", "b", "c", "d"], batch_size=3)
    await recorder.stop()

    history = {}
    for event in recorder.topic(STATUS_TOPIC):
        history.setdefault(event.payload["fileRef"], []).append(ItemStage(event.payload["status"]["stage"]))

    assert history["a"] == [ItemStage.READING, ItemStage.READING, ItemStage.ANALYZING, ItemStage.COMPLETED]
    assert history["b"][-1] == ItemStage.ERROR
    assert ItemStage.ANALYZING not in history["b"]
    assert history["c"][-1] == ItemStage.ERROR
    for stages in history.values():
        orders = [STAGE_ORDER[s] for s in stages]
        assert orders == sorted(orders)


@pytest.mark.asyncio
async def test_status_store_holds_terminal_states(orchestrator, registry, extraction_error):
    orchestrator.extraction_client.failures["b"] = extraction_error

    await orchestrator.run(["a", "b"], batch_size=2)

    store = registry.latest().status_store
    assert len(store) == 2
    a = store.get("a")
    assert a.status == ItemStatus.PROCESSED
    assert a.stage == ItemStage.COMPLETED
    assert a.extracted_data.invoice_number == "a"
    assert a.current_stage is None
    assert a.duration is not None and a.duration >= 0
    b = store.get("b")
    assert b.status == ItemStatus.ERROR
    assert b.error == "No text was extracted from the document"
    assert b.extracted_data is None
    assert registry.latest().state is JobState.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_item_exception_is_recorded_as_item_failure(publisher):
    extraction = FakeExtractionClient(failures={"b": RuntimeError("socket closed")})
    orchestrator = build_orchestrator(publisher, extraction=extraction)

    result = await orchestrator.run(["a", "b"], batch_size=2)

    assert [r.file_ref for r in result.results] == ["a"]
    assert result.failed_urls[0].url == "b"
    assert result.failed_urls[0].error == "socket closed"


@pytest.mark.asyncio
async def test_error_escaping_a_batch_fails_only_that_batch(orchestrator, registry, monkeypatch):
    normalize_item = orchestrator._normalize_item

    async def flaky_normalize(job, item, text):
        if item.batch_number == 1:
            raise RuntimeError("boom")
        await normalize_item(job, item, text)

    monkeypatch.setattr(orchestrator, "_normalize_item", flaky_normalize)

    result = await orchestrator.run(["a", "b", "c"], batch_size=2)

    assert [r.file_ref for r in result.results] == ["c"]
    assert [f.url for f in result.failed_urls] == ["a", "b"]
    assert all(f.error == "Batch 1 failed: boom" for f in result.failed_urls)

    store = registry.latest().status_store
    assert store.get("a").status == ItemStatus.FAILED
    assert store.get("a").stage == ItemStage.ERROR
    assert store.get("c").status == ItemStatus.PROCESSED


@pytest.mark.asyncio
async def test_batch_error_keeps_items_that_already_finished(orchestrator, publisher, registry, monkeypatch):
    normalize_item = orchestrator._normalize_item

    async def fail_for_b(job, item, text):
        if item.id == "b":
            raise RuntimeError("boom")
        await normalize_item(job, item, text)

    monkeypatch.setattr(orchestrator, "_normalize_item", fail_for_b)

    recorder = EventRecorder(publisher)
    result = await orchestrator.run(["a", "b"], batch_size=2)
    await recorder.stop()

    assert [r.file_ref for r in result.results] == ["a"]
    assert result.results[0].raw_text == "text for a"
    assert [(f.url, f.error) for f in result.failed_urls] == [("b", "Batch 1 failed: boom")]

    store = registry.latest().status_store
    a = store.get("a")
    assert a.status == ItemStatus.PROCESSED
    assert a.extracted_data.invoice_number == "a"
    b = store.get("b")
    assert b.status == ItemStatus.FAILED
    assert b.error == "Batch 1 failed: boom"

    final_status = {}
    for event in recorder.topic(STATUS_TOPIC):
        final_status[event.payload["fileRef"]] = event.payload["status"]["status"]
    assert final_status == {"a": "Processed", "b": "Failed"}
    completed = recorder.topic(BATCH_COMPLETED_TOPIC)[0].payload
    assert [r["fileRef"] for r in completed["results"]] == ["a"]
    assert [f["url"] for f in completed["failedUrls"]] == ["b"]


@pytest.mark.asyncio
async def test_duplicate_refs_are_processed_independently(orchestrator, fake_extraction, registry):
    result = await orchestrator.run(["a", "a", "b"], batch_size=2)

    assert [r.file_ref for r in result.results] == ["a", "a", "b"]
    assert fake_extraction.calls == ["a", "a", "b"]
    assert len(registry.latest().status_store) == 2


@pytest.mark.asyncio
async def test_run_rejects_empty_input(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.run([], batch_size=2)


@pytest.mark.asyncio
async def test_run_rejects_non_positive_batch_size(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.run(["a"], batch_size=0)


@pytest.mark.asyncio
async def test_job_store_is_cleared_at_start(orchestrator):
    job = ProcessingJob(["a"], 1)
    job.status_store.set("stale", ProcessingStatus())

    await orchestrator.run_job(job)

    assert "stale" not in job.status_store
    assert "a" in job.status_store


@pytest.mark.asyncio
async def test_settles_between_batches_only(orchestrator, publisher, monkeypatch):
    drain = AsyncMock(return_value=True)
    monkeypatch.setattr(publisher, "drain", drain)

    await orchestrator.run(["a", "b", "c", "d", "e"], batch_size=2)

    assert drain.await_count == 2
    drain.assert_awaited_with(0.05)


@pytest.mark.asyncio
async def test_run_without_registry_still_returns_result(publisher):
    orchestrator = build_orchestrator(publisher)

    result = await orchestrator.run(["a"], batch_size=1)

    assert result.success is True
    assert result.results[0].data.currency == "EUR"
    assert result.results[0].raw_text == "text for a"
