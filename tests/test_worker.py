import asyncio

from conftest import FakeStorage
from jobs import COMPLETED, ERROR, PROCESSING, RenderOptions, Segment
from worker import RenderWorker


def run_all(worker):
    """Drain the queue through the same path the dispatcher uses."""

    async def _drain():
        while await worker.advance():
            pass

    asyncio.run(_drain())


def record_progress(store):
    """Wrap store.update to capture every (status, progress) written."""
    history = []
    original = store.update

    def update(job_id, **fields):
        original(job_id, **fields)
        job = store.get(job_id)
        history.append((job_id, job.status, job.progress))

    store.update = update
    return history


def test_successful_job(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    job_id = store.create(str(source_file), [Segment(0, 2), Segment(5, 7)])
    history = record_progress(store)

    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    job = store.get(job_id)
    assert job.status == COMPLETED
    assert job.progress == 100
    assert job.final_url.startswith("https://cdn.example.com/rendered/")
    assert job.error is None
    assert len(fake_storage.uploads) == 1

    progress = [p for _, _, p in history]
    assert progress == sorted(progress)
    assert [p for _, s, p in history if p == 100] == [100]
    assert history[-1][1] == COMPLETED
    assert fake_ffmpeg.concats[0]["duration"] == 4.0

    assert list(temp_dir.iterdir()) == []


def test_title_and_audio_reach_concat(store, fake_storage, fake_ffmpeg, source_file, tmp_path, temp_dir):
    audio = tmp_path / "music.mp3"
    audio.write_bytes(b"mp3")
    job_id = store.create(
        str(source_file),
        [Segment(0, 1)],
        RenderOptions(title="Hello", audio_url=str(audio)),
    )
    history = record_progress(store)

    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    assert store.get(job_id).status == COMPLETED
    call = fake_ffmpeg.concats[0]
    assert call["title"] == "Hello"
    assert call["audio_path"].endswith(f"{job_id}_audio.mp3")
    assert 30 in [p for _, _, p in history]
    assert list(temp_dir.iterdir()) == []


def test_unreachable_source_fails_and_cleans_up(store, fake_storage, fake_ffmpeg, temp_dir):
    job_id = store.create("http://127.0.0.1:9/missing.mp4", [Segment(0, 1)])

    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    job = store.get(job_id)
    assert job.status == ERROR
    assert job.error
    assert job.final_url is None
    assert fake_ffmpeg.cuts == []
    assert list(temp_dir.iterdir()) == []


def test_missing_audio_is_fatal(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    job_id = store.create(
        str(source_file),
        [Segment(0, 1)],
        RenderOptions(audio_url=str(temp_dir.parent / "no-such-audio.mp3")),
    )

    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    job = store.get(job_id)
    assert job.status == ERROR
    assert "no-such-audio.mp3" in job.error
    assert fake_ffmpeg.cuts == []
    assert list(temp_dir.iterdir()) == []


def test_segment_failure_aborts_job(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    fake_ffmpeg.fail_on_cut = 1
    job_id = store.create(str(source_file), [Segment(0, 1), Segment(1, 2), Segment(2, 3)])

    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    job = store.get(job_id)
    assert job.status == ERROR
    assert "segment 1" in job.error
    assert job.progress < 100
    assert len(fake_ffmpeg.cuts) == 2
    assert fake_ffmpeg.concats == []
    assert list(temp_dir.iterdir()) == []


def test_concat_failure(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    fake_ffmpeg.fail_on_concat = True
    job_id = store.create(str(source_file), [Segment(0, 1)])

    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    assert store.get(job_id).status == ERROR
    assert fake_storage.uploads == []
    assert list(temp_dir.iterdir()) == []


def test_publish_failure_never_exposes_url(store, fake_ffmpeg, source_file, temp_dir):
    job_id = store.create(str(source_file), [Segment(0, 1)])

    run_all(RenderWorker(store, FakeStorage(fail=True), str(temp_dir)))

    job = store.get(job_id)
    assert job.status == ERROR
    assert "bucket unavailable" in job.error
    assert job.final_url is None
    assert job.progress == 80
    assert list(temp_dir.iterdir()) == []


def test_unexpected_exception_is_recorded(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    def explode(source_path, segment):
        raise RuntimeError("disk full")

    fake_ffmpeg.on_cut = explode
    job_id = store.create(str(source_file), [Segment(0, 1)])
    worker = RenderWorker(store, fake_storage, str(temp_dir))

    run_all(worker)

    job = store.get(job_id)
    assert job.status == ERROR
    assert job.error == "RuntimeError: disk full"
    assert not worker.busy


def test_failed_job_does_not_block_the_next(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    bad = store.create("http://127.0.0.1:9/missing.mp4", [Segment(0, 1)])
    good = store.create(str(source_file), [Segment(0, 1)])

    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    assert store.get(bad).status == ERROR
    assert store.get(good).status == COMPLETED


def test_jobs_run_fifo_one_at_a_time(store, fake_storage, fake_ffmpeg, tmp_path, temp_dir):
    sources = []
    for i in range(5):
        path = tmp_path / f"in{i}.mp4"
        path.write_bytes(b"src")
        sources.append(path)
    ids = [store.create(str(p), [Segment(0, 1)]) for p in sources]

    processing_counts = []
    order = []

    def observe(source_path, segment):
        processing_counts.append(store.stats()[PROCESSING])
        order.append(store.ids_with_status(PROCESSING)[0])

    fake_ffmpeg.on_cut = observe
    run_all(RenderWorker(store, fake_storage, str(temp_dir)))

    assert processing_counts == [1] * 5
    assert order == ids
    assert all(store.get(i).status == COMPLETED for i in ids)


def test_process_ignores_non_queued_jobs(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    job_id = store.create(str(source_file), [Segment(0, 1)])
    worker = RenderWorker(store, fake_storage, str(temp_dir))
    run_all(worker)
    assert store.get(job_id).status == COMPLETED

    asyncio.run(worker.process(job_id))
    asyncio.run(worker.process("missing"))
    assert len(fake_ffmpeg.cuts) == 1


def test_advance_is_noop_when_queue_empty(store, fake_storage, temp_dir):
    worker = RenderWorker(store, fake_storage, str(temp_dir))
    assert asyncio.run(worker.advance()) is False
    assert not worker.busy


def test_dispatcher_wakes_on_notify(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    fake_ffmpeg.delay = 0.01

    async def scenario():
        worker = RenderWorker(store, fake_storage, str(temp_dir))
        worker.start()
        await asyncio.sleep(0.01)
        assert not worker.busy

        ids = []
        for _ in range(3):
            ids.append(store.create(str(source_file), [Segment(0, 1)]))
            worker.notify()

        max_processing = 0
        for _ in range(500):
            stats = store.stats()
            max_processing = max(max_processing, stats[PROCESSING])
            if stats[COMPLETED] == 3:
                break
            await asyncio.sleep(0.005)

        await worker.stop()
        return ids, max_processing

    ids, max_processing = asyncio.run(scenario())
    assert max_processing <= 1
    assert [store.get(i).status for i in ids] == [COMPLETED] * 3
    assert store.list_queued() == []


def test_stop_marks_in_flight_job_as_error(store, fake_storage, fake_ffmpeg, source_file, temp_dir):
    fake_ffmpeg.delay = 5

    async def scenario():
        worker = RenderWorker(store, fake_storage, str(temp_dir))
        job_id = store.create(str(source_file), [Segment(0, 1)])
        worker.start()
        for _ in range(200):
            if store.get(job_id).status == PROCESSING and fake_ffmpeg.cuts:
                break
            await asyncio.sleep(0.005)
        await worker.stop()
        return job_id

    job_id = asyncio.run(scenario())
    job = store.get(job_id)
    assert job.status == ERROR
    assert "shutdown" in job.error
    assert list(temp_dir.iterdir()) == []
